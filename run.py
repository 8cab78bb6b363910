#!/usr/bin/env python3
"""
Helper script to run the enrollment calendar sync service.
"""

import uvicorn

if __name__ == "__main__":
    uvicorn.run("enrollment_calendar.main:app", host="0.0.0.0", port=8008, reload=True)
