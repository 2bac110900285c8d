"""Entry lifecycle engine: store, polling, pipeline, controller, persistence."""

from .blobs import BlobRegistry, is_durable, is_ephemeral
from .store import EntryStore
from .polling import OCR_POLICY, POINTS_POLICY, PollPolicy, poll_until
from .normalize import normalize_image
from .persistence import SnapshotStore
from .pipeline import PipelineOrchestrator, TokenHolder
from .controller import EntryController
from .flow import ReceiptTracker, TrackerConfig, build_tracker_config, log_environment_banner

__all__ = [
    "BlobRegistry",
    "is_durable",
    "is_ephemeral",
    "EntryStore",
    "OCR_POLICY",
    "POINTS_POLICY",
    "PollPolicy",
    "poll_until",
    "normalize_image",
    "SnapshotStore",
    "PipelineOrchestrator",
    "TokenHolder",
    "EntryController",
    "ReceiptTracker",
    "TrackerConfig",
    "build_tracker_config",
    "log_environment_banner",
]
