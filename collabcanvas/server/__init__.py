"""FastAPI surface for collabcanvas."""
