from mitr_analytics.main import app
import uvicorn
import os
import logging

if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("MITR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("MITR_PORT", 7870))
    # Loopback by default; set MITR_HOST=0.0.0.0 for server/Docker mode
    host = os.environ.get("MITR_HOST", "127.0.0.1")
    uvicorn.run(app, host=host, port=port)
