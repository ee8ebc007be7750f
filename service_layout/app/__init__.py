"""
Layout Service package for the layout entitlement platform.

This package resolves the UI layout a user should see from the directory
groups they belong to. It provides:

- app.main: API surface for layout computation, administration and health.
- app.resolution: Group parsing, layered merge engine and audit trail.
- app.cache: In-process cache tiers for preferences, templates and overrides.
- app.persistence: Backing store interface with PostgreSQL and in-memory adapters.

Guidelines:
- Resolution is deterministic for a given store state and clock.
- Every resolution attempt leaves exactly one audit record.
- Cache tiers are injected, never module-level state.
"""
