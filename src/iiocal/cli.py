"""Command line interface for the iiocal package."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from . import __version__
from .calibrator import Calibrator
from .config import CalibrationConfig, load_config
from .errors import CalibrationError
from .iio import tools_from_config
from .reporting import export_offsets, offsets_frame, render_offsets
from .simulator import SimulatedAdc
from .store import OffsetStore, offsets_to_json

logger = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    help="IIO ADC offset calibration.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
regs_app = typer.Typer(help="Offset register utilities.")
app.add_typer(regs_app, name="regs")


@dataclass
class CliState:
    config: CalibrationConfig
    simulate: bool

    def calibrator(self) -> Calibrator:
        store = OffsetStore(self.config.offsets_path)
        if self.simulate:
            adc = SimulatedAdc.for_config(self.config)
            return Calibrator(adc, adc, store, self.config)
        acquisition, registers = tools_from_config(self.config)
        return Calibrator(acquisition, registers, store, self.config)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_listen(addr: str) -> Tuple[str, int]:
    """Split ``host:port`` (host optional, e.g. ``:80``) for uvicorn."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        host, port = "", addr
    try:
        port_num = int(port)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid listen address {addr!r}", param_hint="--listen") from exc
    return host or "0.0.0.0", port_num


def _fail(exc: Exception) -> None:
    typer.echo(f"[error] {exc}", err=True)
    raise typer.Exit(code=1) from exc


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="IIOCAL_CONFIG", help="JSON configuration file."
    ),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override config keys, e.g. --set sample_count=2048"
    ),
    debug: bool = typer.Option(False, "--debug", envvar="DEBUG", help="Debug logging."),
    simulate: bool = typer.Option(
        False, "--simulate", help="Use an in-memory ADC instead of iio_readdev/iio_reg."
    ),
) -> None:
    configure_logging(debug)
    try:
        cfg = load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Failed to load configuration: {exc}", param_hint="--config") from exc
    ctx.obj = CliState(config=cfg, simulate=simulate)


@app.command()
def version() -> None:
    """Print the package version."""

    typer.echo(__version__)


@app.command()
def serve(
    ctx: typer.Context,
    listen: Optional[str] = typer.Option(
        None, "--listen", envvar="LISTEN_ADDR", help="Address to listen on, e.g. ':80'."
    ),
    restore: bool = typer.Option(
        True, "--restore/--no-restore", help="Write persisted offsets to the registers at start-up."
    ),
) -> None:
    """Start the HTTP control service."""

    import uvicorn

    from .api import create_app

    state: CliState = ctx.obj
    host, port = parse_listen(listen or state.config.listen or ":80")
    calibrator = state.calibrator()
    logger.info("listen on addr: %s:%d", host, port)
    uvicorn.run(create_app(calibrator, restore_on_startup=restore), host=host, port=port)


@app.command()
def calibrate(
    ctx: typer.Context,
    channel: Optional[int] = typer.Option(
        None, "--channel", help="Global channel id; omit to calibrate every channel."
    ),
) -> None:
    """Measure and apply DC offsets."""

    calibrator = ctx.obj.calibrator()
    try:
        results = [calibrator.calibrate_channel(channel)] if channel is not None else calibrator.calibrate_all()
    except CalibrationError as exc:
        _fail(exc)
    for result in results:
        offsets = ", ".join(f"voltage{ch}={off}" for ch, off in result.offsets.items())
        typer.echo(f"{result.device}: {offsets}")
        for warning in result.warnings:
            typer.echo(f"[warning] {warning}")
    typer.echo("Calibration done")


@app.command()
def params(ctx: typer.Context) -> None:
    """Show the persisted offset map as JSON."""

    store = OffsetStore(ctx.obj.config.offsets_path)
    try:
        offsets = store.load(strict=True)
    except CalibrationError as exc:
        _fail(exc)
    typer.echo(json.dumps(offsets_to_json(offsets), indent=2))


@app.command()
def restore(ctx: typer.Context) -> None:
    """Write the persisted offsets to the registers."""

    calibrator = ctx.obj.calibrator()
    try:
        offsets = calibrator.restore_offsets()
    except (CalibrationError, ValueError) as exc:
        _fail(exc)
    count = sum(len(channels) for channels in offsets.values())
    typer.echo(f"Restored {count} offsets")


@regs_app.command("show")
def regs_show(
    ctx: typer.Context,
    csv_path: Optional[Path] = typer.Option(None, "--csv", help="Also write the table to CSV."),
) -> None:
    """Read back the offset registers and compare with the persisted map."""

    calibrator = ctx.obj.calibrator()
    try:
        registers = calibrator.read_offsets()
    except CalibrationError as exc:
        _fail(exc)
    frame = offsets_frame(ctx.obj.config, persisted=calibrator.store.load(), registers=registers)
    typer.echo(render_offsets(frame))
    if csv_path is not None:
        export_offsets(frame, csv_path)
        typer.echo(f"Offsets written to {csv_path}")


@regs_app.command("clear")
def regs_clear(ctx: typer.Context) -> None:
    """Zero every offset register."""

    calibrator = ctx.obj.calibrator()
    try:
        calibrator.clear_offsets()
    except CalibrationError as exc:
        _fail(exc)
    typer.echo("ClearRegsParams done")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
