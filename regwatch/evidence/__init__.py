"""Evidence capture, classification and derived text."""

from regwatch.evidence.classifier import classify_content
from regwatch.evidence.store import CaptureResult, EvidenceStore

__all__ = ["CaptureResult", "EvidenceStore", "classify_content"]
