"""BehaviorForge engine server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting BehaviorForge engine on {host}:{port}")
    uvicorn.run("behaviorforge.main:app", host=host, port=port, reload=debug)
