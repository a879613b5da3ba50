"""
Automation rules — which feed events trigger which automation.

  welcome          CUSTOMER    created | updated     customer has SMS consent
  order_placed     ORDER       created | confirmed   order has a customer
  order_fulfilled  FULFILLMENT created | updated     fulfillment status FULFILLED

The poller asks for events of an automation's subject types, fetches the
subject detail, and only queues an automation job when should_trigger()
holds for that detail.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from models.schemas import AutomationType, FeedEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class AutomationRule:
    automation_type: AutomationType
    subject_types: tuple[str, ...]
    actions: tuple[str, ...]
    job_name: str


RULES: dict[AutomationType, AutomationRule] = {
    AutomationType.WELCOME: AutomationRule(
        AutomationType.WELCOME, ("CUSTOMER",), ("created", "updated"), "welcome",
    ),
    AutomationType.ORDER_PLACED: AutomationRule(
        AutomationType.ORDER_PLACED, ("ORDER",), ("created", "confirmed"), "order-confirmation",
    ),
    AutomationType.ORDER_FULFILLED: AutomationRule(
        AutomationType.ORDER_FULFILLED, ("FULFILLMENT",), ("created", "updated"), "order-fulfilled",
    ),
}


def get_rule(automation_type: str) -> Optional[AutomationRule]:
    try:
        return RULES[AutomationType(automation_type)]
    except ValueError:
        return None


def map_event_to_automation_types(event: FeedEvent) -> list[AutomationType]:
    """All automation types whose subject type and action match the event."""
    return [
        rule.automation_type for rule in RULES.values()
        if event.subject_type in rule.subject_types and event.action in rule.actions
    ]


def should_trigger(event: FeedEvent, automation_type: str, detail: dict[str, Any]) -> bool:
    rule = get_rule(automation_type)
    if rule is None:
        return False
    if event.subject_type not in rule.subject_types or event.action not in rule.actions:
        return False

    if rule.automation_type is AutomationType.WELCOME:
        customer = detail.get("customer") or {}
        return bool(customer.get("hasSmsConsent"))
    if rule.automation_type is AutomationType.ORDER_PLACED:
        order = detail.get("order") or {}
        return bool(order.get("customer"))
    if rule.automation_type is AutomationType.ORDER_FULFILLED:
        fulfillment = detail.get("fulfillment") or {}
        return fulfillment.get("status") == "FULFILLED"
    return False


def _customer_name(customer: dict[str, Any]) -> str:
    return (customer.get("firstName") or "").strip() or "there"


def build_job_payload(event: FeedEvent, automation_type: str, tenant_id: str,
                      detail: dict[str, Any]) -> dict[str, Any]:
    """Destination number and template variables for the automation job."""
    rule = get_rule(automation_type)
    phone = ""
    variables: dict[str, Any] = {}

    if rule.automation_type is AutomationType.WELCOME:
        customer = detail.get("customer") or {}
        phone = customer.get("phone") or ""
        variables = {"customer_name": _customer_name(customer)}

    elif rule.automation_type is AutomationType.ORDER_PLACED:
        order = detail.get("order") or {}
        customer = order.get("customer") or {}
        phone = customer.get("phone") or order.get("phone") or ""
        variables = {
            "customer_name": _customer_name(customer),
            "order_number": order.get("name", ""),
            "total_price": order.get("totalPrice", ""),
            "currency": order.get("currency", ""),
        }

    elif rule.automation_type is AutomationType.ORDER_FULFILLED:
        fulfillment = detail.get("fulfillment") or {}
        order = fulfillment.get("order") or {}
        customer = order.get("customer") or {}
        phone = customer.get("phone") or order.get("phone") or ""
        variables = {
            "customer_name": _customer_name(customer),
            "order_number": order.get("name", ""),
            "tracking_number": fulfillment.get("trackingNumber") or "",
        }

    return {
        "tenant_id": tenant_id,
        "automation_type": rule.automation_type.value,
        "event_id": event.id,
        "occurred_at": event.occurred_at.isoformat(),
        "phone": phone,
        "variables": variables,
    }


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render_message(template: str, variables: dict[str, Any]) -> str:
    """Fill ``{placeholders}``; unknown placeholders render empty."""
    try:
        return template.format_map(_Defaults(variables or {}))
    except (ValueError, IndexError, AttributeError) as e:
        logger.warning("template_render_failed", error=str(e))
        return template
