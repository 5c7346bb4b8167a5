"""Typer CLI entrypoint.

Every device verb is one-shot: connect (auto-discovering the earbuds unless
``--address`` is given), run a single command, disconnect.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

import typer

from earctl.core.config import Settings, load_settings
from earctl.core.errors import EarctlError, InvalidArgumentError
from earctl.core.model import (
    AncLevel,
    BatteryReading,
    BatteryStatus,
    CustomEq,
    DeviceModel,
    EarSide,
    GestureSlot,
)
from earctl.core.service import EarService
from earctl.logging_config import configure_logging

app = typer.Typer(help="Control Nothing earbuds over their RFCOMM serial link")
anc_app = typer.Typer(help="Active noise cancellation level")
eq_app = typer.Typer(help="Preset equalizer mode")
custom_eq_app = typer.Typer(help="Custom three-band equalizer (dB)")
latency_app = typer.Typer(help="Low-latency mode")
in_ear_app = typer.Typer(help="In-ear detection")
enhanced_bass_app = typer.Typer(help="Enhanced bass")
personalized_anc_app = typer.Typer(help="Personalized ANC")
gestures_app = typer.Typer(help="Touch gesture mapping")
ear_fit_app = typer.Typer(help="Ear tip fit test")

app.add_typer(anc_app, name="anc")
app.add_typer(eq_app, name="eq")
app.add_typer(custom_eq_app, name="custom-eq")
app.add_typer(latency_app, name="latency")
app.add_typer(in_ear_app, name="in-ear")
app.add_typer(enhanced_bass_app, name="enhanced-bass")
app.add_typer(personalized_anc_app, name="personalized-anc")
app.add_typer(gestures_app, name="gestures")
app.add_typer(ear_fit_app, name="ear-fit")


class Switch(str, Enum):
    ON = "on"
    OFF = "off"


@dataclass(frozen=True)
class _Target:
    settings: Settings
    address: str | None = None
    channel: int | None = None
    name: str | None = None


def _fail(exc: EarctlError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _build_service(target: _Target) -> EarService:
    service = EarService(settings=target.settings)
    for warning in service.catalog.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return service


@contextmanager
def _connected(ctx: typer.Context, target: _Target | None = None) -> Iterator[EarService]:
    target = target or ctx.obj
    try:
        service = _build_service(target)
        service.auto_connect(target.name, target.channel, address=target.address)
        try:
            yield service
        finally:
            service.disconnect()
    except EarctlError as exc:
        raise _fail(exc) from None


def _on_off(enabled: bool) -> str:
    return "on" if enabled else "off"


def _format_model(model: DeviceModel | None) -> str:
    if model is None:
        return "unknown"
    label = model.name or model.model_id or "unknown model"
    return f"{label} (base {model.base})"


def _format_reading(reading: BatteryReading | None) -> str:
    if reading is None:
        return "n/a"
    suffix = " (charging)" if reading.charging else ""
    return f"{reading.percent}%{suffix}"


def _format_battery(status: BatteryStatus) -> list[str]:
    return [
        f"left: {_format_reading(status.left)}",
        f"right: {_format_reading(status.right)}",
        f"case: {_format_reading(status.case)}",
    ]


def _format_custom_eq(eq: CustomEq) -> str:
    return f"bass={eq.bass:+.1f} mid={eq.mid:+.1f} treble={eq.treble:+.1f}"


@app.callback()
def main(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", help="Earbuds MAC address"),
    channel: int | None = typer.Option(None, "--channel", help="RFCOMM channel (default: SDP lookup)"),
    name: str | None = typer.Option(None, "--name", help="Pick the first connected device whose name contains NAME"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    try:
        settings = load_settings()
    except EarctlError as exc:
        raise _fail(exc) from None
    configure_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = _Target(settings=settings, address=address, channel=channel, name=name)


@app.command("devices")
def list_devices(ctx: typer.Context) -> None:
    """List connected Bluetooth devices."""
    target: _Target = ctx.obj
    try:
        devices = _build_service(target).list_devices(target.name)
    except EarctlError as exc:
        raise _fail(exc) from None
    if not devices:
        typer.echo("No connected Bluetooth devices found")
        return
    for device in devices:
        typer.echo(f"{device.address} {device.name}")


def _print_session(ctx: typer.Context, target: _Target) -> None:
    with _connected(ctx, target) as service:
        info = service.session_info()
    typer.echo(f"Session {info.id}")
    typer.echo(f"  address: {info.address}")
    typer.echo(f"  channel: {info.channel}")
    typer.echo(f"  model: {_format_model(info.model)}")
    if info.model is not None:
        capabilities = ", ".join(capability.value for capability in info.model.capabilities) or "none"
        typer.echo(f"  capabilities: {capabilities}")


@app.command("session")
def show_session(ctx: typer.Context) -> None:
    """Connect and print the resolved session."""
    _print_session(ctx, ctx.obj)


@app.command("connect")
def connect(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Earbuds MAC address"),
    channel: int | None = typer.Option(None, "--channel", help="RFCOMM channel (default: SDP lookup)"),
) -> None:
    """Connect to ADDRESS and print the session."""
    target: _Target = ctx.obj
    _print_session(ctx, dataclasses.replace(target, address=address, channel=channel or target.channel))


@app.command("auto-connect")
def auto_connect(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Substring of the device name (default: first connected device)"),
    channel: int | None = typer.Option(None, "--channel", help="RFCOMM channel (default: SDP lookup)"),
) -> None:
    """Pick a connected device by name, connect and print the session."""
    target: _Target = ctx.obj
    _print_session(
        ctx,
        dataclasses.replace(target, address=None, name=name or target.name, channel=channel or target.channel),
    )


@app.command("detect")
def detect(ctx: typer.Context) -> None:
    """Read the serial number and the model it maps to."""
    with _connected(ctx) as service:
        identity = service.detect()
    typer.echo(f"serial: {identity.serial_number or 'unknown'}")
    typer.echo(f"sku: {identity.sku or 'unknown'}")
    typer.echo(f"model: {identity.model_id or 'unknown'}")


@app.command("battery")
def battery(ctx: typer.Context) -> None:
    """Show battery levels."""
    with _connected(ctx) as service:
        status = service.read_battery()
    for line in _format_battery(status):
        typer.echo(line)


@app.command("firmware")
def firmware(ctx: typer.Context) -> None:
    """Show the firmware version."""
    with _connected(ctx) as service:
        info = service.read_firmware()
    typer.echo(info.version)


@anc_app.command("get")
def anc_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        level = service.read_anc()
    typer.echo(level.value)


@anc_app.command("set")
def anc_set(
    ctx: typer.Context,
    level: str = typer.Argument(..., help="off, transparency, nc-low, nc-mid, nc-high or adaptive"),
) -> None:
    try:
        parsed = AncLevel.parse(level)
    except InvalidArgumentError:
        raise typer.BadParameter(f"unknown ANC level '{level}'", param_hint="LEVEL") from None
    with _connected(ctx) as service:
        result = service.set_anc(parsed)
    typer.echo(f"anc={result.value}")


@eq_app.command("get")
def eq_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        mode = service.read_eq()
    typer.echo(str(mode.mode))


@eq_app.command("set")
def eq_set(ctx: typer.Context, mode: int = typer.Argument(..., help="Device preset index")) -> None:
    with _connected(ctx) as service:
        result = service.set_eq(mode)
    typer.echo(f"eq={result.mode}")


@custom_eq_app.command("get")
def custom_eq_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        eq = service.read_custom_eq()
    typer.echo(_format_custom_eq(eq))


@custom_eq_app.command("set")
def custom_eq_set(
    ctx: typer.Context,
    bass: float | None = typer.Option(None, "--bass", help="Bass gain in dB, -6 to 6"),
    mid: float | None = typer.Option(None, "--mid", help="Mid gain in dB, -6 to 6"),
    treble: float | None = typer.Option(None, "--treble", help="Treble gain in dB, -6 to 6"),
) -> None:
    """Set band gains. Omitted bands keep their current value."""
    if bass is None and mid is None and treble is None:
        raise typer.BadParameter("pass at least one of --bass, --mid or --treble")
    with _connected(ctx) as service:
        if bass is None or mid is None or treble is None:
            current = service.read_custom_eq()
        else:
            current = CustomEq(bass=bass, mid=mid, treble=treble)
        requested = {"bass": bass, "mid": mid, "treble": treble}
        changes = {band: value for band, value in requested.items() if value is not None}
        result = service.set_custom_eq(dataclasses.replace(current, **changes))
    typer.echo(_format_custom_eq(result))


@latency_app.command("get")
def latency_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        state = service.read_latency()
    typer.echo(_on_off(state.low_latency_enabled))


@latency_app.command("set")
def latency_set(ctx: typer.Context, state: Switch = typer.Argument(...)) -> None:
    with _connected(ctx) as service:
        result = service.set_latency(state is Switch.ON)
    typer.echo(f"latency={_on_off(result.low_latency_enabled)}")


@in_ear_app.command("get")
def in_ear_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        state = service.read_in_ear()
    typer.echo(_on_off(state.detection_enabled))


@in_ear_app.command("set")
def in_ear_set(ctx: typer.Context, state: Switch = typer.Argument(...)) -> None:
    with _connected(ctx) as service:
        result = service.set_in_ear(state is Switch.ON)
    typer.echo(f"in-ear={_on_off(result.detection_enabled)}")


@enhanced_bass_app.command("get")
def enhanced_bass_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        state = service.read_enhanced_bass()
    typer.echo(f"{_on_off(state.enabled)} level={state.level}")


@enhanced_bass_app.command("set")
def enhanced_bass_set(
    ctx: typer.Context,
    state: Switch = typer.Argument(...),
    level: int = typer.Option(0, "--level", help="Bass boost level, 0 to 127"),
) -> None:
    with _connected(ctx) as service:
        result = service.set_enhanced_bass(state is Switch.ON, level)
    typer.echo(f"enhanced-bass={_on_off(result.enabled)} level={result.level}")


@personalized_anc_app.command("get")
def personalized_anc_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        state = service.read_personalized_anc()
    typer.echo(_on_off(state.enabled))


@personalized_anc_app.command("set")
def personalized_anc_set(ctx: typer.Context, state: Switch = typer.Argument(...)) -> None:
    with _connected(ctx) as service:
        result = service.set_personalized_anc(state is Switch.ON)
    typer.echo(f"personalized-anc={_on_off(result.enabled)}")


@gestures_app.command("get")
def gestures_get(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        slots = service.read_gestures()
    if not slots:
        typer.echo("No gestures reported")
        return
    for slot in slots:
        typer.echo(
            f"device={slot.device} common={slot.common} type={slot.gesture_type} action={slot.action}"
        )


@gestures_app.command("set")
def gestures_set(
    ctx: typer.Context,
    device: int = typer.Argument(..., help="Target bud code"),
    common: int = typer.Argument(...),
    gesture_type: int = typer.Argument(..., metavar="TYPE"),
    action: int = typer.Argument(...),
) -> None:
    slot = GestureSlot(device=device, common=common, gesture_type=gesture_type, action=action)
    with _connected(ctx) as service:
        service.set_gesture(slot)
    typer.echo(f"gesture device={device} type={gesture_type} action={action}")


@ear_fit_app.command("start")
def ear_fit_start(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        service.start_ear_fit_test()
    typer.echo("Ear fit test started")


@ear_fit_app.command("result")
def ear_fit_result(ctx: typer.Context) -> None:
    with _connected(ctx) as service:
        result = service.read_ear_fit_result()
    typer.echo(f"left={result.left} right={result.right}")


@app.command("ring")
def ring(
    ctx: typer.Context,
    side: EarSide | None = typer.Option(None, "--side", help="Bud to ring (ignored by case-LED models)"),
    stop: bool = typer.Option(False, "--stop", help="Stop ringing"),
) -> None:
    """Make the buds play a locating tone."""
    with _connected(ctx) as service:
        request = service.ring(not stop, side)
    target = request.side.value if request.side is not None else "both"
    typer.echo(f"ring {target} {_on_off(request.enabled)}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
