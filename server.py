"""Harness orchestrator server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables before the app reads its settings
load_dotenv()

if __name__ == "__main__":
    # Use 127.0.0.1 for local development; 0.0.0.0 only when other devices need access
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting Harness API server on {host}:{port}")
    # Import string so reload and workers work
    uvicorn.run("harness.main:app", host=host, port=port, reload=debug)
