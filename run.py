#!/usr/bin/env python3
"""
WatchParty Application Runner

Simple script to start the WatchParty server with proper configuration.
"""

import sys

import uvicorn

from watchparty.config import DEBUG, HOST, PORT

if __name__ == "__main__":
    print("Starting WatchParty Server...")
    print(f"Server will be available at: http://localhost:{PORT}")
    print("Press Ctrl+C to stop the server")
    print("-" * 50)

    try:
        uvicorn.run(
            "watchparty.main:socket_app",
            host=HOST,
            port=PORT,
            reload=DEBUG,
            log_level="info",
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n👋 Server stopped. Enjoy the show!")
    except Exception as e:
        print(f" Error starting server: {e}")
        sys.exit(1)
