from contextlib import asynccontextmanager
import asyncio, logging, os
from typing import Any, Dict, Optional

import pydantic
import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rich.logging import RichHandler

from .actions import SwapTerms, parse_action
from .bootstrap import Services, build_services
from .config import load_config
from .errors import (
    ChainSubmissionError,
    InvalidSecret,
    NotConfirmed,
    NotFoundError,
    ParameterMismatch,
    RelayerError,
    StateConflict,
    ValidationError,
    VerificationError,
)

log = logging.getLogger("relayer")

_STATUS = (
    (NotConfirmed, 202),
    (ValidationError, 400),
    (InvalidSecret, 400),
    (StateConflict, 409),
    (NotFoundError, 404),
    (VerificationError, 422),
    (ParameterMismatch, 422),
    (ChainSubmissionError, 502),
)


def status_for(err: RelayerError) -> int:
    for cls, status in _STATUS:
        if isinstance(err, cls):
            return status
    return 500


def _check_rpcs(services: Services) -> None:
    if services.w3 is not None:
        try:
            if services.w3.is_connected():
                log.info("EVM RPC is reachable")
            else:
                log.warning("EVM RPC is not reachable")
        except Exception as err:
            log.warning(f"Unable to reach EVM RPC: {err}")
    if services.soroban is not None:
        try:
            health = services.soroban.get_health()
            log.info(f"Soroban RPC is {health.status}")
        except Exception as err:
            log.warning(f"Unable to reach Soroban RPC: {err}")


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
            handlers=[RichHandler(rich_tracebacks=True)],
        )
        if app.state.services is None:
            app.state.services = build_services(load_config())
            await asyncio.to_thread(_check_rpcs, app.state.services)
        log.info(f"Relayer ready, chains: {app.state.services.chains}")
        yield
        log.info("Shutting down the relayer")

    app = FastAPI(lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(RelayerError)
    async def relayer_error(request: Request, err: RelayerError):
        status = status_for(err)
        if status >= 500:
            log.error(f"{request.method} {request.url.path}: {err.message}")
        return JSONResponse(status_code=status, content=err.to_dict())

    @app.post("/swaps")
    async def initiate(terms: SwapTerms):
        coordinator = app.state.services.coordinator
        swap_id = await asyncio.to_thread(coordinator.initiate, terms)
        return {"swap_id": swap_id}

    @app.put("/swaps")
    async def act(body: Dict[str, Any] = Body(...)):
        try:
            action = parse_action(body)
        except pydantic.ValidationError as err:
            raise RequestValidationError(err.errors(include_context=False))
        coordinator = app.state.services.coordinator
        result = await asyncio.to_thread(coordinator.dispatch, action)
        return result.to_dict()

    @app.get("/swaps/{swap_id}")
    async def query(swap_id: str):
        coordinator = app.state.services.coordinator
        record = await asyncio.to_thread(coordinator.query, swap_id)
        return record.to_dict()

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "chains": app.state.services.chains}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("swap_relayer.main:app", host="0.0.0.0", port=port, reload=True)
