"""
Live Conversation Assistant.

Captures a conversation from the microphone, transcribes it, and shares the
resulting session (messages, topics, action items, summary) between every
client joined to it in real time.

Modules:
    - capture: Audio capture engine (recording, monitor mode, replay)
    - channel: Reconnecting WebSocket session channel
    - coordinator: Client-local session projection and merge rules
    - storage: Session storage (in-memory, REST client)
    - analysis: Summary, topic and suggestion backends (keyword, Ollama, REST client)
    - transcription: Chunk-fed speech transcription (Whisper)
    - api: FastAPI routes and the WebSocket session hub
    - config: Configuration management
    - terminal_interface: CLI client
    - main: Main entry point

Usage:
    # Run API server
    python -m convo_assist.main

    # Run terminal client
    python -m convo_assist.main --terminal
"""

__version__ = "1.0.0"
__author__ = "Capstone2 Team"
