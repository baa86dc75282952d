"""
reference — Regulatory reference data and status evaluation.

Modules:
    models     — Substance, Jurisdiction, Threshold, Measurement, SafetyStatus
    resolver   — Immutable snapshot + threshold fallback resolution
    evaluator  — Pure value → SafetyStatus mapping
    loader     — JSON reference documents → snapshot
"""
