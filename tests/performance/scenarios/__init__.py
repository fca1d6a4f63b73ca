"""
Load scenarios.

Each module in this package exposes a ``SCENARIO`` object that
``loadgen run module:SCENARIO`` can execute:

- :mod:`.ecommerce` -- health check, user and product lookups, order
  placement, payment, stock check and notification
"""
