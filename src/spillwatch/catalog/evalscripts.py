"""Evaluation scripts sent to the Sentinel Hub processing endpoint."""

# Oil Spill Index: (B03 + B04) / B02. Red above 2.0, yellow above 1.2, transparent otherwise.
OIL_SPILL_INDEX_EVALSCRIPT = """//VERSION=3
function setup() {
  return {
    input: ["B02", "B03", "B04", "dataMask"],
    output: { bands: 4 }
  };
}

function evaluatePixel(sample) {
  if (sample.dataMask === 0) return [0, 0, 0, 0];
  let osi = (sample.B03 + sample.B04) / sample.B02;
  if (osi > 2.0) return [1, 0, 0, 1];
  if (osi > 1.2) return [1, 1, 0, 1];
  return [0, 0, 0, 0];
}
"""
