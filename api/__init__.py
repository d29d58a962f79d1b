"""HyperCut Agent - HTTP surface (FastAPI server and request models)."""
