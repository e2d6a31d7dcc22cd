from radiomonitor.ingest.dedup import DedupGate, SubmitResult

__all__ = ["DedupGate", "SubmitResult"]
