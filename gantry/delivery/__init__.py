"""Artifact upload, delivery dispatch and failure notification."""
from __future__ import annotations

from .artifacts import ArtifactRelay, FilesystemArtifactStore, UploadReport
from .notify import FailureContext, NotificationSink
from .trigger import DeliveryTrigger, DispatchAck

__all__ = [
    "ArtifactRelay",
    "DeliveryTrigger",
    "DispatchAck",
    "FailureContext",
    "FilesystemArtifactStore",
    "NotificationSink",
    "UploadReport",
]
