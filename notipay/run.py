# run.py
import uvicorn
from notipay.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "notipay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True
    )
