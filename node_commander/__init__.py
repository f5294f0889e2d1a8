"""
Node Commander — node-local workload daemon.

Creates, starts, stops and deletes workload containers on behalf of a remote
control plane, keeps a durable per-workload lifecycle state, and serves
real-time logs / stats / exec channels over WebSocket.
"""

__version__ = "1.0.0"
