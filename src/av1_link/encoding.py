"""Outgoing video encoding planning for single-layer and scalable (SVC) sends."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Protocol

from .errors import EncodingConfigError

logger = logging.getLogger(__name__)

BASE_LAYER_SHARE = 0.4
LAYER_SHARE_STEP = 0.3


class LayerRepresentation(str, Enum):
    """How the media engine accepts scalable encodings."""

    LAYERS = "layers"
    SCALABILITY_MODE = "scalability_mode"


@dataclass(frozen=True, slots=True)
class LayerSpec:
    """A single entry of the sender's encodings list."""

    max_bitrate_bps: int
    spatial_downscale: float = 1.0
    stream_id: str | None = None
    scalability_mode: str | None = None
    active: bool = True

    def __post_init__(self) -> None:
        if self.spatial_downscale < 1:
            raise ValueError("Spatial downscale must be at least 1")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "active": self.active,
            "maxBitrate": int(self.max_bitrate_bps),
        }
        if self.stream_id is not None:
            payload["rid"] = self.stream_id
        if self.spatial_downscale != 1:
            payload["scaleResolutionDownBy"] = self.spatial_downscale
        if self.scalability_mode is not None:
            payload["scalabilityMode"] = self.scalability_mode
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LayerSpec":
        return cls(
            max_bitrate_bps=int(payload.get("maxBitrate", 0) or 0),
            spatial_downscale=float(payload.get("scaleResolutionDownBy", 1.0) or 1.0),
            stream_id=payload.get("rid"),
            scalability_mode=payload.get("scalabilityMode"),
            active=bool(payload.get("active", True)),
        )


@dataclass(frozen=True, slots=True)
class EncodingPlan:
    """Ordered encodings, lowest quality first. Superseded wholesale, never edited."""

    layers: tuple[LayerSpec, ...]

    def __post_init__(self) -> None:
        if not self.layers:
            raise ValueError("An encoding plan requires at least one layer")
        object.__setattr__(self, "layers", tuple(self.layers))

    @classmethod
    def single_layer(cls, bitrate_bps: int) -> "EncodingPlan":
        return cls((LayerSpec(max_bitrate_bps=int(bitrate_bps)),))

    @property
    def is_layered(self) -> bool:
        return len(self.layers) > 1

    @property
    def scalability_mode(self) -> str | None:
        if len(self.layers) == 1:
            return self.layers[0].scalability_mode
        return None

    @property
    def total_bitrate_bps(self) -> int:
        return sum(layer.max_bitrate_bps for layer in self.layers)

    def to_parameters(self) -> dict[str, Any]:
        return {"encodings": [layer.to_dict() for layer in self.layers]}

    @classmethod
    def from_parameters(cls, parameters: Mapping[str, Any] | None) -> "EncodingPlan | None":
        if not parameters:
            return None
        encodings = parameters.get("encodings") or []
        layers = tuple(LayerSpec.from_dict(entry) for entry in encodings if isinstance(entry, Mapping))
        if not layers:
            return None
        return cls(layers)


@dataclass(frozen=True, slots=True)
class EncodingConfig:
    """User-selected encoding settings combined with the current call phase."""

    bitrate_bps: int
    spatial_layers: int = 1
    temporal_layers: int = 1
    svc_enabled: bool = False
    is_active_call: bool = False
    representation: LayerRepresentation = LayerRepresentation.LAYERS


class EncodingTarget(Protocol):
    """Video sender whose encoder parameters can be read and replaced."""

    encoding_representation: LayerRepresentation

    def has_video_sender(self) -> bool: ...

    async def get_encoding_plan(self) -> EncodingPlan | None: ...

    async def set_encoding_plan(self, plan: EncodingPlan) -> None: ...


def scalability_mode(spatial_layers: int, temporal_layers: int) -> str:
    """Return the compact ``L<spatial>T<temporal>`` scalability mode string."""

    return f"L{int(spatial_layers)}T{int(temporal_layers)}"


def layer_bitrate_share(index: int) -> float:
    # Fixed heuristic weighting; intentionally not normalised to 100%.
    return BASE_LAYER_SHARE + index * LAYER_SHARE_STEP


def _layered_plan(config: EncodingConfig) -> EncodingPlan:
    count = int(config.spatial_layers)
    temporal_mode = (
        scalability_mode(1, config.temporal_layers) if config.temporal_layers > 1 else None
    )
    layers = tuple(
        LayerSpec(
            max_bitrate_bps=round(config.bitrate_bps * layer_bitrate_share(index)),
            spatial_downscale=float(2 ** (count - 1 - index)),
            stream_id=f"s{index}",
            scalability_mode=temporal_mode,
        )
        for index in range(count)
    )
    return EncodingPlan(layers)


def _retune_bitrate(current: EncodingPlan, bitrate_bps: int) -> EncodingPlan:
    if len(current.layers) == 1:
        layer = current.layers[0]
        return EncodingPlan((replace(layer, max_bitrate_bps=int(bitrate_bps), active=True),))
    return EncodingPlan(
        tuple(
            replace(
                layer,
                max_bitrate_bps=round(bitrate_bps * layer_bitrate_share(index)),
                active=True,
            )
            for index, layer in enumerate(current.layers)
        )
    )


def plan_encoding(current: EncodingPlan | None, config: EncodingConfig) -> EncodingPlan:
    """Derive the encoder parameters for *config*.

    While a call is active only the bitrate of the running topology is
    retuned; layer and scalability-mode changes wait for the next call.
    """

    if config.is_active_call:
        if current is None:
            return EncodingPlan.single_layer(config.bitrate_bps)
        return _retune_bitrate(current, config.bitrate_bps)

    if not config.svc_enabled or config.spatial_layers <= 1:
        return EncodingPlan.single_layer(config.bitrate_bps)

    if config.representation is LayerRepresentation.SCALABILITY_MODE:
        return EncodingPlan(
            (
                LayerSpec(
                    max_bitrate_bps=int(config.bitrate_bps),
                    scalability_mode=scalability_mode(
                        config.spatial_layers, config.temporal_layers
                    ),
                ),
            )
        )
    return _layered_plan(config)


async def apply_encoding_plan(
    target: EncodingTarget, plan: EncodingPlan, *, fallback_bitrate_bps: int
) -> EncodingPlan:
    """Apply *plan*, degrading to a bare single layer when the engine rejects it.

    Raises :class:`EncodingConfigError` when the fallback is rejected too; the
    sender then keeps whatever parameters it was already running.
    """

    try:
        await target.set_encoding_plan(plan)
        return plan
    except Exception as exc:
        first_error: Exception = exc
        logger.warning("Encoder rejected %d-layer plan: %s", len(plan.layers), exc)

    fallback = EncodingPlan.single_layer(fallback_bitrate_bps)
    if fallback == plan:
        raise EncodingConfigError(f"Unable to apply encoding parameters: {first_error}") from first_error
    try:
        await target.set_encoding_plan(fallback)
    except Exception as exc:
        logger.error("Encoder rejected fallback single-layer plan: %s", exc)
        raise EncodingConfigError(f"Unable to apply encoding parameters: {exc}") from exc
    logger.info("Applied fallback single-layer encoding at %d bps", fallback_bitrate_bps)
    return fallback


async def configure_encoding(
    target: EncodingTarget, config: EncodingConfig
) -> EncodingPlan | None:
    """Plan and apply encoder parameters on *target*'s video sender."""

    if not target.has_video_sender():
        logger.info("No video sender available; skipping encoding configuration")
        return None
    try:
        current = await target.get_encoding_plan()
    except Exception as exc:
        raise EncodingConfigError(f"Unable to read encoding parameters: {exc}") from exc
    plan = plan_encoding(current, config)
    if config.is_active_call:
        logger.debug("Call active: keeping layer topology, retuning bitrate only")
    elif plan.scalability_mode is not None:
        logger.info("SVC enabled with scalability mode %s", plan.scalability_mode)
    elif plan.is_layered:
        logger.info("SVC enabled with %d spatial layers", len(plan.layers))
    else:
        logger.info("Single-layer encoding configured")
    return await apply_encoding_plan(target, plan, fallback_bitrate_bps=config.bitrate_bps)


__all__ = [
    "EncodingConfig",
    "EncodingPlan",
    "EncodingTarget",
    "LayerRepresentation",
    "LayerSpec",
    "apply_encoding_plan",
    "configure_encoding",
    "layer_bitrate_share",
    "plan_encoding",
    "scalability_mode",
]
