"""DocForge Upload Gate and view checks."""
