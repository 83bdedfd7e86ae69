#!/usr/bin/env python
"""
Billing engine API server
Runs the FastAPI app with uvicorn (PORT and HOST from the environment)
"""
import os
import sys

# Add src to Python path (relative to api_server.py) for runs without an install
src_path = os.path.join(os.path.dirname(__file__), "src")
if os.path.exists(src_path) and src_path not in sys.path:
    sys.path.insert(0, src_path)

from billing_engine.app import app  # noqa: E402


def main():
    import uvicorn
    
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "0.0.0.0")
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
