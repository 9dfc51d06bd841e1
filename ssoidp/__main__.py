"""Run the identity provider.

Usage:
    python -m ssoidp
    python -m ssoidp --reload  # development
"""

import argparse

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the SSO identity provider")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    args = parser.parse_args()

    uvicorn.run("ssoidp.app:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
