"""Stream duplication for single-read ingestion."""

from pinrelay.stream.tee import DuplicatedStream, TeeHandle, tee

__all__ = ["DuplicatedStream", "TeeHandle", "tee"]
