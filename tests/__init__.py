"""
Test suite for the loadgen load generator.

This package contains:
- unit/: Stage plans, metrics, thresholds, executor, context, loader and CLI
- integration/: Whole runs against fake HTTP sessions
- performance/: The e-commerce scenario, its run file and live-mesh runs
"""
