"""
tablerpc client.

Transports, endpoint proxies and the stub generator that writes typed
client modules for a server.
"""

from tablerpc.client.proxy import ClientBase, EndpointProxy, build_client
from tablerpc.client.stub_generator import (
    StubGenerator,
    load_generated_module,
    load_stub_file,
    verify_stubs,
)
from tablerpc.client.transport import HttpTransport, LocalTransport, Transport

__all__ = [
    "ClientBase",
    "EndpointProxy",
    "HttpTransport",
    "LocalTransport",
    "StubGenerator",
    "Transport",
    "build_client",
    "load_generated_module",
    "load_stub_file",
    "verify_stubs",
]
