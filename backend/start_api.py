#!/usr/bin/env python3
"""
PayLive API Startup Script

Starts the checkout FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the PayLive API server."""
    print("Starting PayLive API Server...")
    print("Documentation will be available at:")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   STRIPE_SECRET_KEY=sk_test_...")
        print("   STRIPE_WEBHOOK_SECRET=whsec_...")
        print("   BOXTAL_ACCESS_KEY=... / BOXTAL_SECRET_KEY=...")
        print("")

    try:
        uvicorn.run(
            "paylive.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["paylive"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down PayLive API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
