"""HTTP control surface for the calibration service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from . import __version__
from .calibrator import Calibrator
from .errors import (
    AcquisitionError,
    CalibrationCancelled,
    CalibrationError,
    ConsistencyError,
    PersistenceError,
    RegisterIOError,
    ValidationError,
)
from .store import offsets_to_json

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    ValidationError: 400,
    CalibrationCancelled: 409,
    AcquisitionError: 502,
    RegisterIOError: 502,
    PersistenceError: 500,
    ConsistencyError: 500,
}


def status_for(exc: CalibrationError) -> int:
    for error_type, status in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(calibrator: Calibrator, *, restore_on_startup: bool = False) -> FastAPI:
    """Build the FastAPI application around an existing :class:`Calibrator`."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if restore_on_startup:
            try:
                calibrator.restore_offsets()
            except (CalibrationError, ValueError) as exc:
                logger.error("Restoring persisted offsets failed: %s", exc)
        yield

    app = FastAPI(
        title="IIO ADC offset calibration",
        description="Calibrates and reports per-channel DC offsets of the IIO ADCs.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.calibrator = calibrator

    @app.exception_handler(CalibrationError)
    async def calibration_error_handler(request: Request, exc: CalibrationError) -> JSONResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_for(exc), content={"error": exc.kind, "detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/params")
    def calibration_params() -> Any:
        return offsets_to_json(calibrator.store.load(strict=True))

    @app.get("/regparams")
    def get_regs_params() -> Any:
        return offsets_to_json(calibrator.read_offsets())

    @app.delete("/regparams")
    def clear_regs_params() -> str:
        calibrator.clear_offsets()
        return "ClearRegsParams done"

    @app.post("/calibration")
    def calibration(channel: Optional[str] = Query(default=None)) -> Any:
        if channel is None:
            results = calibrator.calibrate_all()
        else:
            try:
                chan_id = int(channel)
            except ValueError as exc:
                raise ValidationError(f"channel {channel!r} invalid") from exc
            results = [calibrator.calibrate_channel(chan_id)]
        warnings = [warning for result in results for warning in result.warnings]
        return {
            "status": "Calibration done",
            "offsets": {result.device: {str(ch): off for ch, off in result.offsets.items()} for result in results},
            "warnings": warnings,
        }

    return app
