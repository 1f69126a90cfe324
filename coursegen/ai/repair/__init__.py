"""Structured-output repair for LLM responses."""

from __future__ import annotations

from coursegen.ai.repair.cascade import ALL_LAYERS, OutputRejected, RepairAttempt, RepairCascade, RepairExhausted, RepairLayer, RepairOptions, RepairOutcome, parse_structured_output, validate_lenient, validate_strict

__all__ = ["ALL_LAYERS", "OutputRejected", "RepairAttempt", "RepairCascade", "RepairExhausted", "RepairLayer", "RepairOptions", "RepairOutcome", "parse_structured_output", "validate_lenient", "validate_strict"]
