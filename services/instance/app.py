from __future__ import annotations

import os
import time

from fastapi import FastAPI, HTTPException

DOMAIN = os.getenv("FLEET_DOMAIN", "local")

app = FastAPI(title=f"Fleet instance ({DOMAIN})")

APP_STATE = {"slow_s": 0.0, "is_broken": False, "started_at": time.time()}


@app.get("/")
def read_root():
    if APP_STATE["slow_s"] > 0:
        time.sleep(APP_STATE["slow_s"])
    if APP_STATE["is_broken"]:
        raise HTTPException(status_code=500, detail="BROKEN")
    return {"domain": DOMAIN, "message": "Hello from a fleet instance"}


@app.get("/health")
def health_check():
    # Fault injection below lets the controller's grace period and repair be demonstrated.
    if APP_STATE["is_broken"]:
        raise HTTPException(status_code=503, detail="Broken")
    if APP_STATE["slow_s"] > 0:
        time.sleep(APP_STATE["slow_s"])
    return {"status": "healthy", "domain": DOMAIN}


@app.post("/simulate/slow/{seconds}")
def set_slow(seconds: float):
    APP_STATE["slow_s"] = max(0.0, seconds)
    return {"msg": f"Responses delayed by {APP_STATE['slow_s']}s"}


@app.post("/simulate/break")
def break_instance():
    APP_STATE["is_broken"] = True
    return {"msg": "Instance reports unhealthy"}


@app.post("/simulate/reset")
def reset():
    APP_STATE["slow_s"] = 0.0
    APP_STATE["is_broken"] = False
    return {"msg": "Instance back to normal"}
