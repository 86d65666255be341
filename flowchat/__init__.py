"""FlowChat streaming chat transport: client adapter and credential-injecting relay."""

__version__ = "0.1.0"
