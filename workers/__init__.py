"""
Workers - Encoding agents that pull jobs from the scheduler.

Usage:
    python -m workers.encoder_agent \
        --encoder-id desktop-alice-1 \
        --server http://scheduler.local:8790 \
        --encode-fn my_encoder.pipeline:encode
"""

from workers.encoder_agent import EncoderAgent, EncoderAgentConfig

__all__ = [
    "EncoderAgent",
    "EncoderAgentConfig",
]
