import logging
from dataclasses import asdict

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from gsfleet.control.service import FleetService
from gsfleet.errors import ErrorKind, classify, user_message
from gsfleet.games.registry import list_variants

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.USER: 400,
    ErrorKind.CAPACITY: 503,
    ErrorKind.SHUTDOWN: 503,
    ErrorKind.UNEXPECTED: 500,
}


class LaunchRequest(BaseModel):
    owner_id: str
    variant: str
    region: str | None = None
    guild_id: str | None = None


class CreditsRequest(BaseModel):
    balance: float


def _http_error(exc: Exception) -> HTTPException:
    kind = classify(exc)
    if kind is ErrorKind.UNEXPECTED:
        logger.exception("Unexpected error handling request")
    return HTTPException(status_code=STATUS_BY_KIND[kind], detail=user_message(exc))


def create_app(service: FleetService | None = None) -> FastAPI:
    app = FastAPI(title="Game Server Fleet API", version="0.1.0")

    import gsfleet.games.tf2  # noqa: F401

    if service is None:
        service = FleetService.from_settings()
    app.state.service = service

    @app.get("/servers")
    def list_servers(owner_id: str | None = None):
        return [r.to_dict() for r in service.list_instances(owner_id)]

    @app.get("/servers/{instance_id}")
    def get_server(instance_id: str):
        record = service.fleet.find_by_id(instance_id)
        if not record:
            raise HTTPException(status_code=404, detail="Server not found")
        return record.to_dict()

    @app.get("/servers/{instance_id}/status")
    def server_status(instance_id: str):
        try:
            return asdict(service.status(instance_id))
        except Exception as e:
            raise _http_error(e) from e

    @app.post("/servers")
    def create_server(req: LaunchRequest):
        try:
            record = service.create(req.owner_id, req.variant, region=req.region, guild_id=req.guild_id)
        except Exception as e:
            raise _http_error(e) from e
        return record.to_dict()

    @app.delete("/servers/{instance_id}")
    def terminate_server(instance_id: str, owner_id: str):
        try:
            service.terminate(owner_id, instance_id)
        except Exception as e:
            raise _http_error(e) from e
        return {"status": "terminated", "id": instance_id}

    @app.post("/reap/{policy}")
    def reap(policy: str):
        try:
            service.reap(policy)
        except Exception as e:
            raise _http_error(e) from e
        return {"status": "ok", "policy": policy}

    @app.get("/variants")
    def variants(guild_id: str | None = None):
        return [
            {"name": v.name, "display_name": v.display_name, "max_players": v.max_players}
            for v in list_variants(guild_id)
        ]

    @app.get("/owners/{owner_id}/credits")
    def get_credits(owner_id: str):
        return {"owner_id": owner_id, "balance": service.credits.get_balance(owner_id)}

    @app.put("/owners/{owner_id}/credits")
    def set_credits(owner_id: str, req: CreditsRequest):
        service.credits.set_balance(owner_id, req.balance)
        return {"owner_id": owner_id, "balance": req.balance}

    @app.get("/health")
    def health():
        return {
            "status": "draining" if service.coordinator.is_draining else "ok",
            "queued_tasks": len(service.queue),
            "in_flight": service.coordinator.in_flight,
        }

    return app
