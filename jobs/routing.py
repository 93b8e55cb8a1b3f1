"""
Encoder Routing - Capability-aware job→worker matching.

Each encoder type has a fixed, ordered list of encoding modes it accepts.
The claim loop walks that list bucket by bucket, so the order here is the
order in which a worker is offered work.

Usage:
    from jobs.routing import get_capability, encoder_can_run_job

    capability = get_capability(EncoderType.BROWSER)
    for mode in capability.accepted_modes:
        ...

New worker types are added by registering an EncoderCapability; the
claim algorithm never branches on encoder type.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple, Union

from jobs.errors import ValidationError
from jobs.job_types import EncoderType, EncodingMode, Job

logger = logging.getLogger("job_routing")


@dataclass(frozen=True)
class EncoderCapability:
    """What a class of worker is allowed to pick up."""
    encoder_type: EncoderType
    accepted_modes: Tuple[EncodingMode, ...]
    short_only: bool = False  # Only jobs flagged is_short


ENCODER_CAPABILITIES: Dict[EncoderType, EncoderCapability] = {
    EncoderType.DESKTOP: EncoderCapability(
        encoder_type=EncoderType.DESKTOP,
        accepted_modes=(EncodingMode.SELF, EncodingMode.AUTO),
    ),
    # Browser encoders run WebCodecs in a tab; long inputs are not practical
    EncoderType.BROWSER: EncoderCapability(
        encoder_type=EncoderType.BROWSER,
        accepted_modes=(EncodingMode.AUTO,),
        short_only=True,
    ),
    EncoderType.COMMUNITY: EncoderCapability(
        encoder_type=EncoderType.COMMUNITY,
        accepted_modes=(EncodingMode.COMMUNITY, EncodingMode.AUTO),
    ),
}


def parse_encoder_type(value: Union[str, EncoderType]) -> EncoderType:
    """Convert user input to an EncoderType, raising ValidationError."""
    if isinstance(value, EncoderType):
        return value
    try:
        return EncoderType(value)
    except ValueError:
        raise ValidationError(f"Unknown encoder type: {value}", field="encoder_type")


def get_capability(encoder_type: Union[str, EncoderType]) -> EncoderCapability:
    encoder_type = parse_encoder_type(encoder_type)
    capability = ENCODER_CAPABILITIES.get(encoder_type)
    if capability is None:
        raise ValidationError(f"No capability registered for {encoder_type.value}", field="encoder_type")
    return capability


def register_capability(capability: EncoderCapability) -> None:
    """Add or replace the capability entry for an encoder type."""
    ENCODER_CAPABILITIES[capability.encoder_type] = capability
    logger.info(
        f"Registered capability for {capability.encoder_type.value}: "
        f"modes={[m.value for m in capability.accepted_modes]} short_only={capability.short_only}"
    )


def modes_for_encoder(encoder_type: Union[str, EncoderType]) -> List[EncodingMode]:
    """Ordered list of modes a worker of this type may claim."""
    return list(get_capability(encoder_type).accepted_modes)


def encoder_can_run_job(encoder_type: Union[str, EncoderType], job: Job) -> Tuple[bool, str]:
    """
    Check whether a worker type may run a job.

    Returns:
        Tuple of (can_run, reason)
    """
    capability = get_capability(encoder_type)

    if capability.short_only and not job.is_short:
        return False, "short_only"

    if job.encoding_mode == EncodingMode.AUTO:
        return True, "ok"

    if job.encoding_mode not in capability.accepted_modes:
        return False, "mode_mismatch"

    return True, "ok"
