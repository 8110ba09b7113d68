"""Round allocation, attempt lifecycle and lineage forwarding."""
