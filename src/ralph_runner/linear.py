"""Minimal Linear GraphQL client used by the ticket queue manager."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Optional, Protocol

from loguru import logger

from .constants import LINEAR_API_URL, LINEAR_HTTP_TIMEOUT_SECONDS, LINEAR_STATE_TODO
from .errors import TicketAPIError
from .models import Ticket

_ISSUE_FIELDS = """
    id
    identifier
    title
    description
    priority
    url
    state { id name }
    team { id name key }
"""

_TODO_ISSUES_QUERY = (
    """
query($projectId: ID!, $stateName: String!) {
  issues(filter: { state: { name: { eq: $stateName } }, project: { id: { eq: $projectId } } }) {
    nodes {"""
    + _ISSUE_FIELDS
    + """    }
  }
}
"""
)

_PROJECT_ISSUES_QUERY = (
    """
query($projectId: ID!) {
  issues(filter: { project: { id: { eq: $projectId } } }) {
    nodes {"""
    + _ISSUE_FIELDS
    + """    }
  }
}
"""
)

_ISSUE_QUERY = (
    """
query($id: String!) {
  issue(id: $id) {"""
    + _ISSUE_FIELDS
    + """  }
}
"""
)

_STATE_ID_QUERY = """
query($teamId: ID!, $stateName: String!) {
  workflowStates(filter: { team: { id: { eq: $teamId } }, name: { eq: $stateName } }) {
    nodes { id name }
  }
}
"""

_ISSUE_UPDATE_MUTATION = """
mutation($issueId: String!, $stateId: String!) {
  issueUpdate(id: $issueId, input: { stateId: $stateId }) { success }
}
"""

_WORKSPACE_QUERY = """
query {
  organization { urlKey }
}
"""

_COMMENT_MUTATION = """
mutation($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
    comment { id }
  }
}
"""

_PROJECTS_QUERY = """
query {
  projects { nodes { id name slugId state } }
}
"""


class TicketTracker(Protocol):
    """Operations the manager needs from the ticket tracker."""

    def fetch_todo_tickets(self, project_id: str) -> list[Ticket]: ...

    def get_ticket(self, ticket_id: str) -> Ticket: ...

    def verify_ticket_state(self, ticket_id: str, expected_state: str) -> bool: ...

    def update_ticket_state(self, ticket: Ticket, state_name: str) -> None: ...

    def add_comment(self, ticket_id: str, body: str, mentions: Optional[list[str]] = None) -> None: ...


def mention_prefix(usernames: list[str], workspace_key: Optional[str]) -> str:
    """Render user mentions as Linear profile URLs, or `@name` without a workspace key."""
    if workspace_key:
        return " ".join(f"https://linear.app/{workspace_key}/profiles/{name}" for name in usernames)
    return " ".join(f"@{name}" for name in usernames)


class LinearClient:
    """Talk to the Linear GraphQL API with an API key.

    Every method raises :class:`TicketAPIError` on transport failures, non-JSON
    responses and GraphQL errors.
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = LINEAR_API_URL,
        timeout_seconds: int = LINEAR_HTTP_TIMEOUT_SECONDS,
    ):
        self.token = token
        self.api_url = api_url
        self.timeout_seconds = timeout_seconds
        self._workspace_key: Optional[str] = None

    def _execute(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = variables
        request = urllib.request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            # Linear takes personal API keys without a Bearer prefix.
            headers={"Content-Type": "application/json", "Authorization": self.token},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace").strip()
            raise TicketAPIError(f"Linear HTTP error: {exc.code} {exc.reason} {detail}".strip()) from exc
        except urllib.error.URLError as exc:
            raise TicketAPIError(f"Linear request failed: {exc.reason}") from exc
        except OSError as exc:
            raise TicketAPIError(f"Linear request failed: {exc}") from exc

        try:
            response = json.loads(body.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise TicketAPIError(f"Failed to parse Linear response: {exc}") from exc
        if not isinstance(response, dict):
            raise TicketAPIError("Unexpected Linear response shape")

        errors = response.get("errors") or []
        if errors:
            messages = [str(err.get("message") if isinstance(err, dict) else err) for err in errors]
            raise TicketAPIError(f"GraphQL errors: {'; '.join(messages)}")
        data = response.get("data")
        return data if isinstance(data, dict) else {}

    def fetch_todo_tickets(self, project_id: str) -> list[Ticket]:
        """Tickets in Todo for the project, most urgent first."""
        data = self._execute(_TODO_ISSUES_QUERY, {"projectId": project_id, "stateName": LINEAR_STATE_TODO})
        nodes = (data.get("issues") or {}).get("nodes") or []
        tickets = [Ticket.from_node(node) for node in nodes if isinstance(node, dict)]
        tickets.sort(key=lambda ticket: ticket.sort_key)
        return tickets

    def get_ticket(self, ticket_id: str) -> Ticket:
        data = self._execute(_ISSUE_QUERY, {"id": ticket_id})
        node = data.get("issue")
        if not isinstance(node, dict):
            raise TicketAPIError(f"Ticket {ticket_id} not found")
        return Ticket.from_node(node)

    def fetch_project_tickets(self, project_id: str) -> list[Ticket]:
        """Every ticket of the project whatever its state, most urgent first."""
        data = self._execute(_PROJECT_ISSUES_QUERY, {"projectId": project_id})
        nodes = (data.get("issues") or {}).get("nodes") or []
        tickets = [Ticket.from_node(node) for node in nodes if isinstance(node, dict)]
        tickets.sort(key=lambda ticket: ticket.sort_key)
        return tickets

    def verify_ticket_state(self, ticket_id: str, expected_state: str) -> bool:
        """True when the ticket exists and sits in ``expected_state``."""
        data = self._execute(_ISSUE_QUERY, {"id": ticket_id})
        node = data.get("issue")
        if not isinstance(node, dict) or not node.get("id"):
            return False
        return Ticket.from_node(node).state_name == expected_state

    def get_state_id(self, team_id: str, state_name: str) -> str:
        data = self._execute(_STATE_ID_QUERY, {"teamId": team_id, "stateName": state_name})
        nodes = (data.get("workflowStates") or {}).get("nodes") or []
        if not nodes:
            raise TicketAPIError(f"State '{state_name}' not found for team {team_id}")
        return str(nodes[0]["id"])

    def update_ticket_state(self, ticket: Ticket, state_name: str) -> None:
        state_id = self.get_state_id(ticket.team_id, state_name)
        data = self._execute(_ISSUE_UPDATE_MUTATION, {"issueId": ticket.id, "stateId": state_id})
        if not (data.get("issueUpdate") or {}).get("success", False):
            raise TicketAPIError(f"Linear refused to move {ticket.identifier or ticket.id} to {state_name}")
        logger.info("Moved {} to {}", ticket.identifier or ticket.id, state_name)

    def get_workspace_url_key(self) -> str:
        if self._workspace_key is None:
            data = self._execute(_WORKSPACE_QUERY)
            self._workspace_key = str((data.get("organization") or {}).get("urlKey") or "")
        return self._workspace_key

    def add_comment(self, ticket_id: str, body: str, mentions: Optional[list[str]] = None) -> None:
        """Post a comment, prefixing mentions of ``mentions`` when given.

        Mentions use profile URLs; when the workspace key cannot be fetched
        they degrade to plain `@name` text.
        """
        if mentions:
            try:
                workspace_key: Optional[str] = self.get_workspace_url_key()
            except TicketAPIError as exc:
                logger.warning("Could not get workspace info for mentions: {}", exc)
                workspace_key = None
            body = mention_prefix(mentions, workspace_key) + "\n\n" + body
        self._execute(_COMMENT_MUTATION, {"issueId": ticket_id, "body": body})

    def list_projects(self) -> list[dict[str, Any]]:
        data = self._execute(_PROJECTS_QUERY)
        return [node for node in (data.get("projects") or {}).get("nodes") or [] if isinstance(node, dict)]
