"""Transformation engine: path evaluation, conditions, conversion and intents."""

from .conditions import ConditionOperator, conditions_hold, evaluate_condition, validate_conditions
from .conversion import DataType, convert_value, translate_date_format
from .engine import (
    ElementFailure,
    EntityIntent,
    IntentContext,
    TransformationEngine,
    TransformationOutput,
)
from .paths import MISSING, iter_root_array, parse_path, resolve

__all__ = [
    "ConditionOperator",
    "DataType",
    "ElementFailure",
    "EntityIntent",
    "IntentContext",
    "MISSING",
    "TransformationEngine",
    "TransformationOutput",
    "conditions_hold",
    "convert_value",
    "evaluate_condition",
    "iter_root_array",
    "parse_path",
    "resolve",
    "translate_date_format",
    "validate_conditions",
]
