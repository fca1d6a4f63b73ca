"""
Integration tests for the load generator runtime.

Each test drives a complete run (control loop, virtual-user threads,
drain and threshold evaluation) with second-scale stage plans and fake
HTTP sessions.
"""
