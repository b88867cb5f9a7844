"""DocForge metadata store — declarative base, models and the Database handle."""
