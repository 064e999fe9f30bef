import os
import logging
import uvicorn

log_level = os.environ.get("LOG_LEVEL", "DEBUG").upper()
logging.basicConfig(level=log_level, format="%(levelname)-5s [%(name)s] %(message)s")
# Per-query and per-request chatter from the client libraries
for noisy in ("aiosqlite", "httpx", "httpcore", "openai"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

if __name__ == "__main__":
    reload = os.environ.get("DEV_RELOAD", "0") == "1"
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("tutorlab.server:app", host=host, port=port, reload=reload, log_level=log_level.lower())
