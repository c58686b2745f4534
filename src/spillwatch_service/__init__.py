"""HTTP surface for the SpillWatch map UI."""
