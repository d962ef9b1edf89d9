from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("CALIMPORT_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    host = os.getenv("CALIMPORT_HOST", "0.0.0.0")
    port = int(os.getenv("CALIMPORT_PORT", "8080"))
    uvicorn.run("calimport.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
