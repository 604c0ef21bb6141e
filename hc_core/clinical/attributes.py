# hc_core/clinical/attributes.py
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


class AttributeType(str, Enum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    FLAGS = "flags"


# Narrow, typed view of the clinical state that eligibility rules may reference.
# Rule leaves naming a field outside this schema are rejected at load time.
ATTRIBUTE_SCHEMA: dict[str, AttributeType] = {
    # demographics
    "age": AttributeType.NUMBER,
    "gender": AttributeType.STRING,
    "status": AttributeType.STRING,

    # InterRAI outputs
    "maple_score": AttributeType.NUMBER,
    "cps": AttributeType.NUMBER,
    "adl_hierarchy": AttributeType.NUMBER,
    "iadl_performance": AttributeType.NUMBER,
    "chess_score": AttributeType.NUMBER,
    "pain_scale": AttributeType.NUMBER,
    "depression_rating": AttributeType.NUMBER,

    # RUG classification
    "rug_group": AttributeType.STRING,
    "rug_category": AttributeType.STRING,
    "adl_sum": AttributeType.NUMBER,
    "iadl_sum": AttributeType.NUMBER,
    "numeric_rank": AttributeType.NUMBER,

    # clinical history (last 90 days)
    "falls_last_90_days": AttributeType.NUMBER,
    "hospitalizations_last_90_days": AttributeType.NUMBER,
    "er_visits_last_90_days": AttributeType.NUMBER,
    "medications_count": AttributeType.NUMBER,

    # flag collections
    "flags": AttributeType.FLAGS,
    "diagnosis_flags": AttributeType.FLAGS,
    "cap_triggers": AttributeType.FLAGS,
    "high_risk_flags": AttributeType.FLAGS,
}

FLAG_FIELDS = tuple(k for k, t in ATTRIBUTE_SCHEMA.items() if t is AttributeType.FLAGS)

# keyword -> flag, applied to free-text diagnoses
DIAGNOSIS_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("dementia",), "dementia"),
    (("alzheimer",), "alzheimers"),
    (("parkinson",), "parkinsons"),
    (("stroke", "cva"), "stroke"),
    (("diabetes",), "diabetes"),
    (("copd",), "copd"),
    (("heart", "cardiac"), "cardiac"),
)

_ASSESSMENT_SCORES = (
    "maple_score",
    "cps",
    "adl_hierarchy",
    "iadl_performance",
    "chess_score",
    "pain_scale",
    "depression_rating",
)

_CLINICAL_HISTORY = (
    "falls_last_90_days",
    "hospitalizations_last_90_days",
    "er_visits_last_90_days",
    "medications_count",
)


class AttributeBag(Mapping):
    """
    Immutable field -> typed value mapping evaluated by the rule engine.

    Values are one of: int/float/Decimal (NUMBER), bool, str, frozenset[str] (FLAGS).
    A field that is absent (or was None upstream) is simply not in the bag;
    leaves referencing it fail closed.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        normalized: dict[str, Any] = {}
        for key, raw in (values or {}).items():
            if raw is None:
                continue
            value = _coerce(key, raw)
            if value is not None:
                normalized[key] = value
        object.__setattr__(self, "_values", normalized)

    def __setattr__(self, name, value):
        raise AttributeError("AttributeBag is immutable")

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"AttributeBag({self._values!r})"

    def __hash__(self):
        return hash(tuple(sorted((k, _hashable(v)) for k, v in self._values.items())))

    def __eq__(self, other):
        if isinstance(other, AttributeBag):
            return self._values == other._values
        return NotImplemented

    @property
    def all_flags(self) -> frozenset[str]:
        """
        Union of every flag collection plus boolean attributes that are True.
        This is what template required/excluded flag gates look at.
        """
        out: set[str] = set()
        for name in FLAG_FIELDS:
            out.update(self._values.get(name, ()))
        for key, value in self._values.items():
            if value is True:
                out.add(key)
        return frozenset(out)

    def has_flag(self, flag: str) -> bool:
        return flag in self.all_flags

    def without(self, *fields: str) -> "AttributeBag":
        return AttributeBag({k: v for k, v in self._values.items() if k not in fields})

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly copy (flag sets become sorted lists)."""
        out: dict[str, Any] = {}
        for key in sorted(self._values):
            value = self._values[key]
            if isinstance(value, frozenset):
                out[key] = sorted(value)
            elif isinstance(value, Decimal):
                out[key] = float(value)
            else:
                out[key] = value
        return out


def _hashable(value: Any) -> Any:
    if isinstance(value, (list, set)):
        return tuple(sorted(value))
    return value


def _coerce(key: str, raw: Any) -> Any:
    """
    Coerce an upstream value to the schema type for `key`.
    Unknown keys keep their natural type; uncoercible values are dropped
    (a missing attribute fails closed, a wrongly-typed one must not pass).
    """
    kind = ATTRIBUTE_SCHEMA.get(key)

    if kind is AttributeType.FLAGS or (kind is None and isinstance(raw, (list, tuple, set, frozenset))):
        return _coerce_flags(key, raw)

    if kind is AttributeType.NUMBER:
        number = to_number(raw)
        if number is None:
            logger.warning("Dropping attribute %s: not numeric (%r)", key, raw)
        return number

    if kind is AttributeType.BOOLEAN:
        if isinstance(raw, bool):
            return raw
        logger.warning("Dropping attribute %s: not boolean (%r)", key, raw)
        return None

    if kind is AttributeType.STRING:
        return str(raw)

    if isinstance(raw, (bool, int, float, Decimal, str)):
        return raw

    logger.debug("Dropping attribute %s: unsupported type %s", key, type(raw).__name__)
    return None


def _coerce_flags(key: str, raw: Any) -> Optional[frozenset[str]]:
    if isinstance(raw, Mapping):
        # RUG-style {"flag": true/false}
        return frozenset(str(k) for k, v in raw.items() if v)
    if isinstance(raw, str):
        return frozenset([raw])
    if isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset(str(x) for x in raw if x is not None and x != "")
    logger.warning("Dropping attribute %s: not a flag collection (%r)", key, raw)
    return None


def to_number(value: Any):
    """
    Numeric-like coercion shared with the rule engine.
    Booleans are not numbers here.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def extract_diagnosis_flags(diagnoses: Any) -> frozenset[str]:
    if not diagnoses:
        return frozenset()
    if isinstance(diagnoses, str):
        diagnoses = [diagnoses]

    flags: set[str] = set()
    for diagnosis in diagnoses:
        text = str(diagnosis or "").lower()
        for keywords, flag in DIAGNOSIS_KEYWORDS:
            if any(k in text for k in keywords):
                flags.add(flag)
    return frozenset(flags)


def age_on(date_of_birth: Any, as_of: date) -> Optional[int]:
    if not date_of_birth:
        return None
    if isinstance(date_of_birth, datetime):
        dob = date_of_birth.date()
    elif isinstance(date_of_birth, date):
        dob = date_of_birth
    else:
        try:
            dob = date.fromisoformat(str(date_of_birth)[:10])
        except ValueError:
            logger.warning("Ignoring unparseable date_of_birth %r", date_of_birth)
            return None
    years = as_of.year - dob.year
    if (as_of.month, as_of.day) < (dob.month, dob.day):
        years -= 1
    return years


def build_attribute_bag(
    *,
    assessment: Optional[Mapping[str, Any]] = None,
    classification: Optional[Mapping[str, Any]] = None,
    patient: Optional[Mapping[str, Any]] = None,
    as_of: Optional[date] = None,
) -> AttributeBag:
    """
    Assemble an AttributeBag from upstream collaborator payloads.

    assessment:
        InterRAI output. Scores at the top level, history + free-text diagnoses
        under "clinical_data", plus "cap_triggers" / "high_risk_flags" lists.
    classification:
        RUG classification: rug_group, rug_category, adl_sum, iadl_sum,
        cps_score, numeric_rank, flags ({flag: bool} or list).
    patient:
        date_of_birth, gender, status, primary_diagnosis.

    Only fields in ATTRIBUTE_SCHEMA are copied; everything else is ignored.
    """
    assessment = assessment or {}
    classification = classification or {}
    patient = patient or {}
    as_of = as_of or date.today()

    values: dict[str, Any] = {}

    # ----- demographics -----
    values["age"] = age_on(patient.get("date_of_birth"), as_of)
    values["gender"] = patient.get("gender")
    values["status"] = patient.get("status")

    # ----- assessment scores -----
    for key in _ASSESSMENT_SCORES:
        values[key] = assessment.get(key)

    clinical = assessment.get("clinical_data") or {}
    for key in _CLINICAL_HISTORY:
        values[key] = clinical.get(key)

    values["cap_triggers"] = assessment.get("cap_triggers") or []
    values["high_risk_flags"] = assessment.get("high_risk_flags") or []

    diagnosis_flags = set(extract_diagnosis_flags(patient.get("primary_diagnosis")))
    diagnosis_flags |= extract_diagnosis_flags(clinical.get("diagnoses"))
    values["diagnosis_flags"] = diagnosis_flags

    # ----- RUG classification -----
    for key in ("rug_group", "rug_category", "adl_sum", "iadl_sum", "numeric_rank"):
        values[key] = classification.get(key)

    # CPS may arrive from either source; the assessment wins.
    if values.get("cps") is None:
        values["cps"] = classification.get("cps_score")

    values["flags"] = classification.get("flags") or []

    return AttributeBag(values)
