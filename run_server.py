#!/usr/bin/env python3
"""Run the TOEIC words API server.

WORDS_HOST and WORDS_PORT override the bind address; WORDS_RELOAD=1 enables
auto-reload for development.
"""

import os

import uvicorn


def main():
    host = os.environ.get('WORDS_HOST', '0.0.0.0')
    port = int(os.environ.get('WORDS_PORT', '8000'))
    print(f"Starting TOEIC words API server on {host}:{port}...")
    print(f"API documentation available at: http://localhost:{port}/docs")
    uvicorn.run(
        "server.app:app",
        host=host,
        port=port,
        reload=os.environ.get('WORDS_RELOAD') == '1'
    )


if __name__ == "__main__":
    main()
