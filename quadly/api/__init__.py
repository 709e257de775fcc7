"""HTTP surface for Quadly."""
