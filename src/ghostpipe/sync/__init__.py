"""Document <-> disk reconciliation, sessions and the peer transport.

The CRDT-backed document lives in :mod:`ghostpipe.sync.documents` and
needs ``pip install ghostpipe[sync]``; nothing here imports it eagerly.
"""
