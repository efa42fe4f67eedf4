"""
Encore: Record/Replay Test Doubles for Python Services

Usage:
    import encore
    encore.init()  # Patch the configured dynamic classes

    with encore.record() as context:
        service.lookup("id-1")  # Real call, result recorded

    with encore.replay(context.record_id):
        service.lookup("id-1")  # Recorded result, no real call
"""

__version__ = "0.1.0"

from encore.config import DynamicClassEntity, EncoreConfig
from encore.core import get_current_context, init, is_replay_mode, record, replay, stop
from encore.extractor import CallExtractor
from encore.interceptor import mockable
from encore.mocker import Mocker, MockResult
from encore.typedesc import Maybe, describe, resolve

__all__ = [
    "init",
    "record",
    "replay",
    "stop",
    "get_current_context",
    "is_replay_mode",
    "mockable",
    "CallExtractor",
    "Mocker",
    "MockResult",
    "Maybe",
    "describe",
    "resolve",
    "EncoreConfig",
    "DynamicClassEntity",
]
