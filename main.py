"""
Main entry point for the BidPeek entitlements API.
"""
import uvicorn
from bidpeek.api.main import app

if __name__ == "__main__":
    uvicorn.run(
        "bidpeek.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
