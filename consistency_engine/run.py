#!/usr/bin/env python3
"""
Quick runner for the Consistency Engine
=======================================

Usage:
    python -m consistency_engine.run
    # or
    python consistency_engine/run.py
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Consistency Engine...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "consistency_engine.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
