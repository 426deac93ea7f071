"""
Startup script for the replay engine backend.
On Windows this must be used instead of 'uvicorn main:app'.
"""

import sys
import os
import asyncio

# Force unbuffered output
os.environ['PYTHONUNBUFFERED'] = '1'

# Set Windows event loop policy FIRST, before any imports
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("PLAYBACK_API_HOST", "127.0.0.1")
    port = int(os.getenv("PLAYBACK_API_PORT", "8000"))

    print(f"\n Starting replay engine on http://{host}:{port}", flush=True)
    print(f" API Docs available at: http://{host}:{port}/docs", flush=True)

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
        access_log=True
    )
