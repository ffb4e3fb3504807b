"""radiance_server — FastAPI REST API wrapping the radiance_pipeline SDK."""
