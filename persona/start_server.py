#!/usr/bin/env python3
"""
Server entrypoint: python -m persona.start_server
"""
import sys

import uvicorn

from persona.core.config import settings

if __name__ == "__main__":
    print("[Persona] Starting Celebrity Persona API")
    print(f"[Persona] Server: http://{settings.API_HOST}:{settings.API_PORT}")
    try:
        uvicorn.run(
            "persona.main:app",
            host=settings.API_HOST,
            port=settings.API_PORT,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Persona] Shutting down...")
        sys.exit(0)
