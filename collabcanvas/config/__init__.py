"""Configuration loaders for collabcanvas."""
