"""Models, interfaces, exceptions and logging shared across Quadly."""
