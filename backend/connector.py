"""
Event Feed Connector — pulls business events from the e-commerce platform.

The platform does not push these events to us, so the poller pages through
its GraphQL ``events`` connection and fetches the subject (customer, order,
fulfillment) of each candidate event.

Built-in connectors:
  - GraphQLEventFeedConnector: HTTP GraphQL endpoint (httpx + tenacity)
  - MockEventFeedConnector: in-memory feed for development and tests
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import EventsConfig, get_settings
from models.schemas import EventPage, FeedEvent

logger = structlog.get_logger()


class EventFeedError(Exception):
    """The feed answered with GraphQL errors or an unexpected shape."""
    pass


EVENTS_QUERY = """
query getEvents($first: Int!, $after: String, $subjectTypes: [EventSubjectType!], $occurredAtMin: DateTime) {
  events(first: $first, after: $after, filter: { subjectTypes: $subjectTypes, occurredAt: { min: $occurredAtMin } }) {
    edges {
      node {
        id
        occurredAt
        subjectType
        subjectId
        ... on BasicEvent { action message }
      }
      cursor
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

SUBJECT_QUERIES = {
    "CUSTOMER": ("customer", """
query getCustomer($id: ID!) {
  customer(id: $id) { id email firstName lastName phone hasSmsConsent }
}
"""),
    "ORDER": ("order", """
query getOrder($id: ID!) {
  order(id: $id) {
    id name email phone totalPrice currency
    customer { id firstName lastName phone }
  }
}
"""),
    "FULFILLMENT": ("fulfillment", """
query getFulfillment($id: ID!) {
  fulfillment(id: $id) {
    id status trackingNumber
    order { id name phone customer { id firstName lastName phone } }
  }
}
"""),
}


class EventFeedConnector(abc.ABC):
    """Abstract interface to the platform's event feed."""

    @abc.abstractmethod
    async def query_events(
        self,
        tenant_id: str,
        subject_types: list[str],
        occurred_at_min: Optional[datetime] = None,
        first: int = 50,
        after: Optional[str] = None,
    ) -> EventPage:
        """One page of events, oldest filter bound ``occurred_at_min``."""
        ...

    @abc.abstractmethod
    async def get_subject(self, tenant_id: str, event: FeedEvent) -> dict[str, Any]:
        """Subject detail keyed by kind: {"customer": {...}} / {"order": ...} / {"fulfillment": ...}."""
        ...

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  GraphQL over HTTP
# ──────────────────────────────────────────────────────────────

class GraphQLEventFeedConnector(EventFeedConnector):
    """
    Feed endpoint configured as ``events.feed_url``; a ``{tenant_id}``
    placeholder in the URL selects the tenant's store.
    """

    def __init__(self, config: EventsConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().events
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                headers={
                    "X-Shopify-Access-Token": self.config.access_token,
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _query(self, tenant_id: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.feed_url.replace("{tenant_id}", tenant_id)
        response = await client.post(url, json={"query": query, "variables": variables})
        response.raise_for_status()
        body = response.json()
        if body.get("errors"):
            messages = "; ".join(err.get("message", "") for err in body["errors"])
            logger.error("event_feed_graphql_errors", tenant_id=tenant_id, errors=messages)
            raise EventFeedError(f"GraphQL error: {messages}")
        return body.get("data") or {}

    async def query_events(self, tenant_id, subject_types, occurred_at_min=None,
                           first=50, after=None) -> EventPage:
        variables: dict[str, Any] = {"first": first, "subjectTypes": subject_types}
        if after:
            variables["after"] = after
        if occurred_at_min:
            variables["occurredAtMin"] = occurred_at_min.isoformat()

        data = await self._query(tenant_id, EVENTS_QUERY, variables)
        connection = data.get("events")
        if connection is None:
            raise EventFeedError("Invalid response structure from events query")

        events = []
        for edge in connection.get("edges", []):
            node = edge.get("node") or {}
            events.append(FeedEvent(
                id=node["id"],
                subject_type=node.get("subjectType", ""),
                subject_id=node.get("subjectId") or "",
                action=node.get("action") or "",
                occurred_at=node["occurredAt"],
                message=node.get("message") or "",
            ))
        page_info = connection.get("pageInfo") or {}
        logger.info("events_queried", tenant_id=tenant_id, count=len(events),
                    has_next_page=page_info.get("hasNextPage", False))
        return EventPage(
            events=events,
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )

    async def get_subject(self, tenant_id: str, event: FeedEvent) -> dict[str, Any]:
        if event.subject_type not in SUBJECT_QUERIES or not event.subject_id:
            return {}
        key, query = SUBJECT_QUERIES[event.subject_type]
        data = await self._query(tenant_id, query, {"id": event.subject_id})
        subject = data.get(key)
        return {key: subject} if subject else {}

    async def close(self):
        if self.client:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  Mock
# ──────────────────────────────────────────────────────────────

class MockEventFeedConnector(EventFeedConnector):
    """
    In-memory feed. Tests append FeedEvents with add_event() and register
    subject detail per event id.
    """

    def __init__(self):
        self._events: dict[str, list[FeedEvent]] = {}
        self._subjects: dict[str, dict[str, Any]] = {}
        self.queries: list[dict[str, Any]] = []

    def add_event(self, tenant_id: str, event: FeedEvent, subject: dict[str, Any] = None):
        self._events.setdefault(tenant_id, []).append(event)
        if subject is not None:
            self._subjects[event.id] = subject

    async def query_events(self, tenant_id, subject_types, occurred_at_min=None,
                           first=50, after=None) -> EventPage:
        self.queries.append({"tenant_id": tenant_id, "subject_types": list(subject_types),
                             "occurred_at_min": occurred_at_min, "after": after})
        matching = sorted(
            (e for e in self._events.get(tenant_id, [])
             if e.subject_type in subject_types
             and (occurred_at_min is None or e.occurred_at >= occurred_at_min)),
            key=lambda e: e.occurred_at,
        )
        start = int(after) if after else 0
        page = matching[start:start + first]
        end = start + len(page)
        return EventPage(events=page, has_next_page=end < len(matching),
                         end_cursor=str(end) if page else after)

    async def get_subject(self, tenant_id: str, event: FeedEvent) -> dict[str, Any]:
        return self._subjects.get(event.id, {})


def create_event_feed_connector(config: EventsConfig = None) -> EventFeedConnector:
    """Factory function to create the appropriate feed connector."""
    config = config or get_settings().events
    if config.feed_url and not config.feed_url.startswith("${"):
        return GraphQLEventFeedConnector(config)
    logger.warning("using_mock_event_feed", reason="events.feed_url not configured")
    return MockEventFeedConnector()
