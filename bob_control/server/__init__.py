"""Network boundary: the aiohttp server and the protocol gateway."""
from .gateway import ClientConnection, Gateway
from .server import BobServer

__all__ = ["BobServer", "ClientConnection", "Gateway"]
