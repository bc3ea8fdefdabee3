"""Template variable resolution.

Turns a template's HTML plus the values supplied with a generation request
into final HTML, in four steps:

1. ``validate_required``: every required declaration has a supplied value
2. ``resolve_crm_variables``: CRM-backed declarations whose namespace matches
   the document's CRM record are read from the live object
3. ``inject_computed_variables``: current date/time values, never
   overwriting what the caller supplied
4. ``substitute``: ``{{ name }}`` placeholders are replaced by the formatted
   values and any placeholder left over is removed

Substitution runs last so CRM, computed and supplied values all come from
the same flat map.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol
from uuid import UUID

from app.core.exceptions import TemplateValidationError
from app.core.variables import (
    LocaleFormat,
    VariableValue,
    format_value,
    get_locale,
    month_name,
    render_value,
)
from app.models.document import CrmObjectType
from app.models.template import VariableType

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
SUBSTITUTION_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
LEFTOVER_RE = re.compile(r"\{\{[^}]*\}\}")

COMPUTED_VARIABLES = ("current_date", "current_datetime", "current_year", "current_month")


@dataclass
class VariableDeclaration:
    """One variable slot declared by a template."""

    name: str
    label: str
    type: VariableType = VariableType.CUSTOM
    required: bool = False
    default_value: str | None = None

    @property
    def property_name(self) -> str:
        """CRM property looked up for this variable (``deal.amount`` -> ``amount``)."""
        if "." in self.name:
            return self.name.split(".", 1)[1]
        return self.name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VariableDeclaration":
        raw_type = data.get("type") or VariableType.CUSTOM.value
        try:
            var_type = VariableType(raw_type)
        except ValueError:
            logger.warning("Unknown variable type %r for %s, treating as custom", raw_type, data.get("name"))
            var_type = VariableType.CUSTOM
        default = data.get("default_value", data.get("defaultValue"))
        return cls(
            name=data["name"],
            label=data.get("label") or data["name"],
            type=var_type,
            required=bool(data.get("required", False)),
            default_value=None if default is None else str(default),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
            "default_value": self.default_value,
        }


def parse_declarations(raw: list[dict[str, Any]] | None) -> list[VariableDeclaration]:
    return [VariableDeclaration.from_dict(item) for item in raw or []]


@dataclass(frozen=True)
class CrmContext:
    """The CRM record a document is generated for."""

    object_type: CrmObjectType
    object_id: str


@dataclass
class ValidationResult:
    ok: bool
    missing: list[str] = field(default_factory=list)


@dataclass
class ProcessedTemplate:
    html: str
    resolved_variables: dict[str, str]


class CrmObjectReader(Protocol):
    """The part of the CRM client the resolver needs."""

    async def get_object(
        self,
        tenant_id: UUID,
        object_type: CrmObjectType,
        object_id: str,
        properties: list[str] | None = None,
    ) -> Any: ...


def extract_variable_names(html: str) -> set[str]:
    """Names of all ``{{ token }}`` placeholders in ``html``."""
    names = {match.strip() for match in PLACEHOLDER_RE.findall(html)}
    names.discard("")
    return names


def validate_required(
    declarations: list[VariableDeclaration],
    supplied: dict[str, VariableValue],
) -> ValidationResult:
    missing = [d.name for d in declarations if d.required and d.name not in supplied]
    return ValidationResult(ok=not missing, missing=missing)


def _is_empty(value: VariableValue) -> bool:
    return value is None or value == ""


def _fallback(declaration: VariableDeclaration, supplied: dict[str, VariableValue]) -> VariableValue:
    """Supplied value, else the declared default, else empty string."""
    value = supplied.get(declaration.name)
    if not _is_empty(value):
        return value
    if declaration.default_value is not None:
        return declaration.default_value
    return ""


class _CrmObjectLoader:
    """Fetches the context's CRM object at most once per resolution."""

    def __init__(
        self,
        crm_client: CrmObjectReader | None,
        tenant_id: UUID,
        context: CrmContext,
        properties: list[str],
    ) -> None:
        self._crm_client = crm_client
        self._tenant_id = tenant_id
        self._context = context
        self._properties = properties
        self._loaded = False
        self._properties_values: dict[str, Any] = {}
        self._error: Exception | None = None

    async def properties(self) -> dict[str, Any]:
        if not self._loaded:
            self._loaded = True
            try:
                if self._crm_client is None:
                    raise LookupError("No CRM client configured")
                crm_object = await self._crm_client.get_object(
                    self._tenant_id,
                    self._context.object_type,
                    self._context.object_id,
                    properties=self._properties,
                )
                self._properties_values = dict(crm_object.properties or {})
            except Exception as exc:
                logger.warning(
                    "Could not fetch %s %s for tenant %s: %s",
                    self._context.object_type.value,
                    self._context.object_id,
                    self._tenant_id,
                    exc,
                )
                self._error = exc
        if self._error is not None:
            raise self._error
        return self._properties_values


class TemplateResolver:
    """Resolves template variables and produces final HTML."""

    def __init__(
        self,
        crm_client: CrmObjectReader | None = None,
        locale: str | LocaleFormat | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.crm_client = crm_client
        self.locale = locale if isinstance(locale, LocaleFormat) else get_locale(locale)
        self._clock = clock

    async def resolve_crm_variables(
        self,
        declarations: list[VariableDeclaration],
        supplied: dict[str, VariableValue],
        tenant_id: UUID,
        crm_context: CrmContext | None,
    ) -> dict[str, VariableValue]:
        """Build the flat value map for ``declarations``.

        Declarations in the context's CRM namespace take the live property
        value when it is non-empty. Everything else, and any variable whose
        fetch or lookup fails, falls back on its own to the supplied value,
        the declared default, or an empty string.
        """
        resolved: dict[str, VariableValue] = dict(supplied)
        context_namespace = crm_context.object_type.value if crm_context else None
        matching = [
            d for d in declarations
            if context_namespace is not None and d.type.namespace == context_namespace
        ]

        matching_names = {d.name for d in matching}
        loader = None
        if matching:
            loader = _CrmObjectLoader(
                self.crm_client,
                tenant_id,
                crm_context,
                sorted({d.property_name for d in matching}),
            )

        for declaration in declarations:
            fallback = _fallback(declaration, supplied)
            if loader is None or declaration.name not in matching_names:
                resolved[declaration.name] = fallback
                continue
            try:
                properties = await loader.properties()
                value = properties.get(declaration.property_name)
                resolved[declaration.name] = fallback if _is_empty(value) else value
            except Exception as exc:
                # One bad property must not abort the whole resolution
                logger.info("Variable %s uses its fallback: %s", declaration.name, exc)
                resolved[declaration.name] = fallback

        return resolved

    def inject_computed_variables(
        self,
        values: dict[str, VariableValue],
    ) -> dict[str, VariableValue]:
        """Add date/time values for keys the caller did not supply."""
        now = self._clock()
        computed: dict[str, VariableValue] = {
            "current_date": now.date(),
            "current_datetime": now,
            "current_year": str(now.year),
            "current_month": month_name(now.month, self.locale),
        }
        result = dict(values)
        for key in COMPUTED_VARIABLES:
            if key not in result:
                result[key] = computed[key]
        return result

    def substitute(self, html: str, values: dict[str, VariableValue]) -> str:
        """Replace placeholders, then strip any that are still unresolved."""

        def replace(match: re.Match) -> str:
            name = match.group(1).strip()
            if name not in values:
                return ""
            return render_value(values[name], self.locale)

        result = SUBSTITUTION_RE.sub(replace, html)
        while LEFTOVER_RE.search(result):
            result = LEFTOVER_RE.sub("", result)
        return result

    async def process(
        self,
        content: str,
        declarations: list[VariableDeclaration],
        supplied: dict[str, VariableValue],
        *,
        tenant_id: UUID,
        crm_context: CrmContext | None = None,
    ) -> ProcessedTemplate:
        """Validate, resolve, compute and substitute in one call.

        Raises:
            TemplateValidationError: if required variables are missing.
        """
        validation = validate_required(declarations, supplied)
        if not validation.ok:
            raise TemplateValidationError(validation.missing)

        values = await self.resolve_crm_variables(declarations, supplied, tenant_id, crm_context)
        values = self.inject_computed_variables(values)
        html = self.substitute(content, values)
        return ProcessedTemplate(
            html=html,
            resolved_variables={name: format_value(value, self.locale) for name, value in values.items()},
        )
