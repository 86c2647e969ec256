from __future__ import annotations

import secrets
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from fleetctl import db
from fleetctl.api_models import ConfigUpdateRequest, DrainResponse, FleetStatus, InstanceStatus
from fleetctl.controller import FleetController
from fleetctl.docker_ops import DockerPlatform, docker_available
from fleetctl.errors import ConfigurationError, UnknownInstanceError
from fleetctl.gateway import BackendPool, NoHealthyBackends
from fleetctl.health import HttpProbe
from fleetctl.settings import settings

security = HTTPBasic()


def get_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    if not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def build_controller() -> FleetController:
    platform = DockerPlatform()
    probe = HttpProbe(health_path=settings.health_path, timeout_s=settings.probe_timeout_s)
    return FleetController(platform=platform, probe=probe, lb=BackendPool())


def create_app(controller: FleetController | None = None, autostart: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        ctl = controller or build_controller()
        app.state.controller = ctl
        if autostart:
            if isinstance(ctl.platform, DockerPlatform) and not docker_available():
                db.log_event("WARN", "Docker is not available; the reconciler will keep retrying.")
            ctl.start()
        yield
        ctl.stop()

    app = FastAPI(title="Self-Healing Fleet Controller", lifespan=lifespan)

    def ctl(request: Request) -> FleetController:
        return request.app.state.controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status", response_model=FleetStatus)
    def status(c: FleetController = Depends(ctl)):
        return c.status()

    @app.get("/instances/{instance_id}", response_model=InstanceStatus)
    def instance(instance_id: str, c: FleetController = Depends(ctl)):
        try:
            return c.instance_status(instance_id)
        except UnknownInstanceError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/events")
    def events(limit: int = 100, level: str | None = None):
        return db.latest_events(limit=max(1, min(1000, limit)), level=level)

    @app.put("/config")
    def configure(req: ConfigUpdateRequest, c: FleetController = Depends(ctl), user: str = Depends(get_admin)):
        try:
            new = c.configure(**req.model_dump(exclude_none=True))
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        db.log_event("INFO", f"Configuration changed by {user}")
        return new.as_dict()

    @app.post("/instances/{instance_id}/drain", response_model=DrainResponse)
    def drain(instance_id: str, c: FleetController = Depends(ctl), user: str = Depends(get_admin)):
        try:
            started = c.drain(instance_id)
        except UnknownInstanceError as e:
            raise HTTPException(status_code=404, detail=str(e))
        db.log_event("INFO", f"Manual drain requested by {user}", instance_id=instance_id)
        return {"id": instance_id, "draining": started}

    @app.get("/lb/{path:path}")
    def proxy(path: str, request: Request, c: FleetController = Depends(ctl)):
        """Forward a GET to one registered backend (round-robin)."""
        if not isinstance(c.lb, BackendPool):
            raise HTTPException(status_code=501, detail="Load balancer is external to this process.")
        try:
            target = c.lb.select_backend()
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        url = f"{target.address.rstrip('/')}/{path}"
        try:
            with httpx.Client(timeout=settings.gateway_timeout_s, follow_redirects=False) as client:
                upstream = client.get(url, params=dict(request.query_params))
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"Backend {target.name} failed: {type(e).__name__}")
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
            headers={"X-Fleet-Backend": target.name},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
