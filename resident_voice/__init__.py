"""
resident-voice: Local voice-dictation daemon

Keeps a single Whisper model resident in GPU VRAM, records from the microphone
on request and returns transcripts to local clients via Unix socket IPC.
"""

__version__ = "0.1.0"
