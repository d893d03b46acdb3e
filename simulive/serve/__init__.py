"""Reference backend serving time, schedules, stream-end records and presence."""

from simulive.serve.server import SimuliveServer
from simulive.serve.store import SessionCatalog, StreamEndStore, ViewerRegistry

__all__ = ["SessionCatalog", "SimuliveServer", "StreamEndStore", "ViewerRegistry"]
