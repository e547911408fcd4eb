#!/usr/bin/env python3
"""
Convenience script to run the fan server.
"""
import uvicorn
from fan_server.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "fan_server.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower()
    )
