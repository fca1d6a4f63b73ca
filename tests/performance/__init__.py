"""
Performance scenarios and their run files.

Contains the e-commerce purchase-path scenario, the payload helpers it
builds requests with, and the YAML run file with the production stage
plan and thresholds.  ``test_ecommerce_scenario`` replays the scenario
against a local fake mesh with a shrunken plan.

Traffic flows through the API gateway into the user, product, order,
payment, inventory and notification services, the same path a
storefront client would take.

Key Concepts Demonstrated:
- Fixture-driven, per-user seeded payloads
- Custom ``errors`` / ``success`` rates gated by thresholds
- Exit-code driven CI gating via ``loadgen run``
"""
