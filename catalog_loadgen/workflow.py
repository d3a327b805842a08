from __future__ import annotations

import enum
import functools
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from .checks import Expectation, json_field_equals, json_field_is_list
from .config import ConfigurationError

UPDATED_TITLE = "Updated Test Product"
PATCHED_TITLE = "Patched Test Product"


class StepMethod(enum.Enum):
    CREATE = "create"
    READ = "read"
    LIST = "list"
    REPLACE = "replace"
    PARTIAL_UPDATE = "partial_update"
    DELETE = "delete"

    @property
    def http_method(self) -> str:
        return _HTTP_METHODS[self]


_HTTP_METHODS = {
    StepMethod.CREATE: "POST",
    StepMethod.READ: "GET",
    StepMethod.LIST: "GET",
    StepMethod.REPLACE: "PUT",
    StepMethod.PARTIAL_UPDATE: "PATCH",
    StepMethod.DELETE: "DELETE",
}

Product = Mapping[str, Any]
BodyBuilder = Callable[[Product], Any]
ResponseCheck = Callable[[Product, Any], bool]


@dataclass(frozen=True)
class WorkflowStep:
    check_name: str
    method: StepMethod
    path_template: str
    expected_status: int
    body: Optional[BodyBuilder] = None
    response_check: Optional[ResponseCheck] = None
    description: str = ""

    def path_for(self, product: Product) -> str:
        return self.path_template.format(**product)

    def body_for(self, product: Product) -> Any:
        if self.body is None:
            return None
        return self.body(product)

    def expectation_for(self, product: Product) -> Expectation:
        if self.response_check is None:
            return Expectation(status=self.expected_status)
        return Expectation(
            status=self.expected_status,
            body=functools.partial(self.response_check, product),
            description=self.description,
        )


def _whole_product(product: Product) -> Product:
    return product


def _replacement(product: Product) -> dict[str, Any]:
    return {**product, "title": UPDATED_TITLE}


def _title_patch(product: Product) -> dict[str, Any]:
    return {"title": PATCHED_TITLE}


_is_product_page = json_field_is_list("content")
_has_patched_title = json_field_equals("title", PATCHED_TITLE)


def _same_sku(product: Product, payload: Any) -> bool:
    return json_field_equals("sku", product["sku"])(payload)


def _has_content_list(product: Product, payload: Any) -> bool:
    return _is_product_page(payload)


def _patched_title(product: Product, payload: Any) -> bool:
    return _has_patched_title(payload)


def product_workflow() -> tuple[WorkflowStep, ...]:
    """The create, read, list, replace, patch, delete transaction."""
    return (
        WorkflowStep(
            check_name="product created",
            method=StepMethod.CREATE,
            path_template="/products",
            expected_status=201,
            body=_whole_product,
        ),
        WorkflowStep(
            check_name="product retrieved",
            method=StepMethod.READ,
            path_template="/products/{sku}",
            expected_status=200,
            response_check=_same_sku,
            description="retrieved product has a different sku",
        ),
        WorkflowStep(
            check_name="products listed",
            method=StepMethod.LIST,
            path_template="/products",
            expected_status=200,
            response_check=_has_content_list,
            description="product page is missing its content list",
        ),
        WorkflowStep(
            check_name="product updated",
            method=StepMethod.REPLACE,
            path_template="/products/{sku}",
            expected_status=200,
            body=_replacement,
        ),
        WorkflowStep(
            check_name="product patched",
            method=StepMethod.PARTIAL_UPDATE,
            path_template="/products/{sku}",
            expected_status=200,
            body=_title_patch,
            response_check=_patched_title,
            description="patched product does not carry the new title",
        ),
        WorkflowStep(
            check_name="product deleted",
            method=StepMethod.DELETE,
            path_template="/products/{sku}",
            expected_status=204,
        ),
    )


def validate_workflow(steps: Sequence[WorkflowStep]) -> tuple[WorkflowStep, ...]:
    names = [step.check_name for step in steps]
    if not names:
        raise ConfigurationError("workflow must contain at least one step")
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"duplicate check names in workflow: {', '.join(duplicates)}")
    return tuple(steps)


__all__ = [
    "PATCHED_TITLE",
    "StepMethod",
    "UPDATED_TITLE",
    "WorkflowStep",
    "product_workflow",
    "validate_workflow",
]
