import logging
import os

import uvicorn

logging.getLogger().handlers.clear()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logging.info("Starting CRM automation API on %s:%d", host, port)
    uvicorn.run("crm_api.main:app", host=host, port=port)
