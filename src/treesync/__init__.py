"""treesync: serverless, bidirectional directory synchronization over CRDTs."""

__version__ = "0.3.0"
