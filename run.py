import sys
import os
import uvicorn

if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    host = os.environ.get("CHORECHAMP_HOST", "localhost")
    port = int(os.environ.get("CHORECHAMP_PORT", "8000"))
    uvicorn.run(
        "chorechamp.server:app",
        host=host,
        port=port,
        reload=os.environ.get("CHORECHAMP_RELOAD") == "1",
        reload_dirs=["chorechamp"],
    )
