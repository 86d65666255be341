"""
Relay Module

Server side of the chat transport: connection profiles, their lookup, and
the proxy that forwards chat requests upstream with server-held credentials.
"""

from flowchat.relay.profiles import AuthKind, ConnectionProfile, Credentials, profile_from_instance
from flowchat.relay.proxy import ClientDisconnected, ProxyConnection, RelayFailure, RelayProxy
from flowchat.relay.store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    JsonFileConfigurationStore,
)

__all__ = [
    "AuthKind",
    "ClientDisconnected",
    "ConfigurationStore",
    "ConnectionProfile",
    "Credentials",
    "InMemoryConfigurationStore",
    "JsonFileConfigurationStore",
    "ProxyConnection",
    "RelayFailure",
    "RelayProxy",
    "profile_from_instance",
]
