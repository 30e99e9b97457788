"""
Clinic Relay - Visit Recording Transcription and Summary Relay

A FastAPI-based relay that turns arbitrary-length visit recordings into
speaker-annotated transcripts and elder-friendly structured summaries.
"""

__version__ = "1.0.0"
