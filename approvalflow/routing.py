"""
ApprovalFlow routing rules - which departments and roles suit each module type.

Example YAML:

    departments:
      risk_assessment: [Legal & Compliance, IT]
      document: [Legal & Compliance]
    roles:
      risk_assessment: [decision_maker, admin]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from .exceptions import ValidationError
from .models import ModuleType

DEFAULT_MODULE_DEPARTMENTS: dict[ModuleType, list[str]] = {
    ModuleType.RISK_ASSESSMENT: ["Legal & Compliance", "IT"],
    ModuleType.SYSTEM_REGISTRATION: ["IT", "R&D"],
    ModuleType.DOCUMENT: ["Legal & Compliance"],
    ModuleType.TRAINING: ["HR", "Legal & Compliance"],
    ModuleType.EXPERT_LEGAL_REVIEW: ["Legal & Compliance"],
}

DEFAULT_MODULE_ROLES: dict[ModuleType, list[str]] = {
    ModuleType.RISK_ASSESSMENT: ["decision_maker", "admin"],
    ModuleType.SYSTEM_REGISTRATION: ["developer", "admin"],
    ModuleType.DOCUMENT: ["admin"],
    ModuleType.TRAINING: ["decision_maker"],
    ModuleType.EXPERT_LEGAL_REVIEW: ["legal_expert", "admin"],
}


@dataclass
class RoutingRules:
    module_departments: dict[ModuleType, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MODULE_DEPARTMENTS.items()}
    )
    module_roles: dict[ModuleType, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MODULE_ROLES.items()}
    )

    def departments_for(self, module_type: ModuleType) -> list[str]:
        return list(self.module_departments.get(module_type, []))

    def roles_for(self, module_type: ModuleType) -> list[str]:
        return list(self.module_roles.get(module_type, []))

    def to_dict(self) -> dict[str, Any]:
        return {
            "departments": {k.value: list(v) for k, v in self.module_departments.items()},
            "roles": {k.value: list(v) for k, v in self.module_roles.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoutingRules":
        """Build rules, falling back to defaults for module types not mentioned."""
        rules = cls()
        rules.module_departments.update(
            _parse_mapping(data.get("departments") or {}, "departments")
        )
        rules.module_roles.update(_parse_mapping(data.get("roles") or {}, "roles"))
        return rules

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "RoutingRules":
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Routing file not found: {path}", field="routing_file")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError("Routing file must contain a mapping", field="routing_file")
        return cls.from_dict(data)


def _parse_mapping(raw: Any, section: str) -> dict[ModuleType, list[str]]:
    if not isinstance(raw, dict):
        raise ValidationError(f"'{section}' must be a mapping", field=section)

    parsed: dict[ModuleType, list[str]] = {}
    for key, values in raw.items():
        try:
            module_type = ModuleType(key)
        except ValueError:
            valid = [m.value for m in ModuleType]
            raise ValidationError(
                f"Unknown module type '{key}' in '{section}'. Valid: {valid}",
                field=section,
            )
        if isinstance(values, str):
            values = [values]
        parsed[module_type] = [str(v) for v in values or []]
    return parsed
