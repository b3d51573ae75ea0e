# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed kRPC-style remote procedure calls and server-pushed streams over Apache Arrow IPC."""

import logging

# telerpc.rpc must be imported before telerpc.service: the service
# module loads telerpc.rpc submodules, whose package imports the server,
# which imports telerpc.service.
from telerpc.rpc import (
    CallContext,
    CallTimeoutError,
    Client,
    ClientConfig,
    ConnectionClosedError,
    ConnectionFailedError,
    Event,
    ExceptionRegistry,
    ProcedureCall,
    RemoteFault,
    RpcError,
    RpcServer,
    ServerConfig,
    Services,
    Status,
    Stream,
    StreamDisconnectedError,
    StreamError,
    StreamInfo,
    StreamRemovedError,
    StreamTimeoutError,
    TransportError,
    VersionError,
    connect,
    serve_pipe,
    serve_tcp,
)
from telerpc.encoding import (
    ArrowSerializableDataclass,
    ArrowType,
    Double,
    EncodingError,
    Float,
    Int32,
    Int64,
    UInt32,
    UInt64,
    decode,
    encode,
)
from telerpc.metadata import REQUEST_VERSION
from telerpc.objects import RemoteObject
from telerpc.service import ProcedureInfo, ServiceProxy, procedure, procedures
from telerpc.services.krpc import KRPC, Expression
from telerpc.utils import IPCError

__version__ = "0.1.0"

__all__ = [
    "KRPC",
    "REQUEST_VERSION",
    "ArrowSerializableDataclass",
    "ArrowType",
    "CallContext",
    "CallTimeoutError",
    "Client",
    "ClientConfig",
    "ConnectionClosedError",
    "ConnectionFailedError",
    "Double",
    "EncodingError",
    "Event",
    "ExceptionRegistry",
    "Expression",
    "Float",
    "IPCError",
    "Int32",
    "Int64",
    "ProcedureCall",
    "ProcedureInfo",
    "RemoteFault",
    "RemoteObject",
    "RpcError",
    "RpcServer",
    "ServerConfig",
    "Services",
    "ServiceProxy",
    "Status",
    "Stream",
    "StreamDisconnectedError",
    "StreamError",
    "StreamInfo",
    "StreamRemovedError",
    "StreamTimeoutError",
    "TransportError",
    "UInt32",
    "UInt64",
    "VersionError",
    "connect",
    "decode",
    "encode",
    "procedure",
    "procedures",
    "serve_pipe",
    "serve_tcp",
]

# Library loggers stay silent unless the application configures logging.
logging.getLogger("telerpc").addHandler(logging.NullHandler())
