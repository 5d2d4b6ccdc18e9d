"""Exception taxonomy shared by the client and server sides."""
from __future__ import annotations


class ConvoAssistError(Exception):
    """Base class for every error raised by convo_assist."""


class DeviceUnavailable(ConvoAssistError):
    """No permitted or matching audio input device could be opened."""


class TransportDisconnected(ConvoAssistError):
    """The session channel was not open when a frame had to be sent."""


class AnalysisFailed(ConvoAssistError):
    """The summarization/analysis collaborator returned an error."""


class StorageFailed(ConvoAssistError):
    """A create/read/update call on the storage collaborator was rejected."""


class MalformedMessage(ConvoAssistError):
    """A channel frame could not be decoded into ``{type, ...fields}``."""
