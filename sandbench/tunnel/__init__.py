# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Reverse SSH tunnel: connector, forward session, dispatcher and supervisor.

Architecture:
- TunnelSupervisor owns at most one SessionHandle at a time
- connect_session() opens TCP, runs the SSH handshake and key auth
- ForwardSession opens the control channel and requests the remote forward
- ConnectionDispatcher serves each forwarded connection in its own task
"""

from sandbench.tunnel.backoff import ExponentialBackoff
from sandbench.tunnel.connector import SessionHandle, TunnelClient, connect_session
from sandbench.tunnel.dispatcher import ChannelTransport, ConnectionDispatcher
from sandbench.tunnel.forward import (
    FORWARD_HOST,
    FORWARD_PORT,
    ControlEvent,
    ControlEventKind,
    ControlSession,
    ForwardSession,
)
from sandbench.tunnel.supervisor import TunnelState, TunnelSupervisor

__all__ = [
    "FORWARD_HOST",
    "FORWARD_PORT",
    "ChannelTransport",
    "ConnectionDispatcher",
    "ControlEvent",
    "ControlEventKind",
    "ControlSession",
    "ExponentialBackoff",
    "ForwardSession",
    "SessionHandle",
    "TunnelClient",
    "TunnelState",
    "TunnelSupervisor",
    "connect_session",
]
