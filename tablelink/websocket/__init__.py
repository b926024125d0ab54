"""
This package contains the connection layer: transport, auth handshake,
outbound queue, heartbeat, reconnection policy and the ConnectionManager
that ties them together.
"""
