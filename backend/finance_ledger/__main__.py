"""Run the API server: ``python -m finance_ledger``."""

import uvicorn

from .config import settings

if __name__ == "__main__":
    uvicorn.run(
        "finance_ledger.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
