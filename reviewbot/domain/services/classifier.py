"""
Event Classifier - maps a verified GitHub event to zero or more task envelopes.

Rules are plain functions registered per event name. A rule receives the
delivery id and the decoded payload and returns the envelopes to publish;
an unknown event, an ignored action or a payload missing the fields a rule
needs all classify to zero tasks rather than raising.
"""
import re
from typing import Any, Callable

from reviewbot.core.config import settings
from reviewbot.core.logging import get_logger
from reviewbot.domain.envelope import TaskEnvelope, TaskType

logger = get_logger(__name__)

Rule = Callable[[str, dict[str, Any]], list[TaskEnvelope]]

HELP_TEXT = (
    "Sorry, I did not understand that. Commands I know:\n\n"
    "- `@{login} please merge` - squash, sign and merge this pull request\n"
    "- `@{login} please restart` - re-run CI for the head commit\n"
    "- `@{login} please add label <name>` - add a label\n"
)


def _object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _number(*candidates: Any) -> int | None:
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    return None


def extract_common_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Fields every task payload carries, whatever the event shape; wrong types read as missing"""
    pull_request = _object(payload.get("pull_request"))
    issue = _object(payload.get("issue"))

    fields: dict[str, Any] = {
        "repository": _text(_object(payload.get("repository")).get("full_name")),
        "number": _number(pull_request.get("number"), issue.get("number"), payload.get("number")),
        "sender": _text(_object(payload.get("sender")).get("login")),
    }
    if pull_request:
        head = _object(pull_request.get("head"))
        labels = pull_request.get("labels")
        fields["head_sha"] = _text(head.get("sha"))
        fields["head_ref"] = _text(head.get("ref"))
        fields["base_ref"] = _text(_object(pull_request.get("base")).get("ref"))
        fields["labels"] = [
            _object(label)["name"] for label in (labels if isinstance(labels, list) else [])
            if _text(_object(label).get("name"))
        ]
    return fields


def _installation_id(payload: dict[str, Any]) -> int | None:
    value = _object(payload.get("installation")).get("id")
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _envelope(
    event: str,
    delivery_id: str,
    task_type: TaskType,
    payload: dict[str, Any],
    source: dict[str, Any],
) -> TaskEnvelope:
    return TaskEnvelope(
        delivery_id=delivery_id,
        task_type=task_type,
        payload=payload,
        event=event,
        installation_id=_installation_id(source),
    )


class EventClassifier:
    """Registry of classification rules keyed by X-GitHub-Event"""

    def __init__(self, bot_login: str | None = None, new_pr_labels: list[str] | None = None):
        self.bot_login = bot_login or settings.BOT_LOGIN
        self.new_pr_labels = new_pr_labels if new_pr_labels is not None else settings.new_pr_labels
        self._rules: dict[str, Rule] = {}
        self._command_re = re.compile(
            rf"@{re.escape(self.bot_login)}\s+please\s+(?P<command>[^\n\r]+)",
            re.IGNORECASE,
        )
        self.register("pull_request", self._pull_request)
        self.register("issue_comment", self._issue_comment)

    def register(self, event: str, rule: Rule) -> None:
        self._rules[event] = rule

    @property
    def events(self) -> list[str]:
        return sorted(self._rules)

    def classify(self, event: str, delivery_id: str, payload: dict[str, Any]) -> list[TaskEnvelope]:
        rule = self._rules.get(event)
        if rule is None:
            return []
        envelopes = rule(delivery_id, payload)
        logger.debug(
            "Event classified",
            extra_data={
                "event": event,
                "delivery_id": delivery_id,
                "tasks": [e.task_type.value for e in envelopes],
            },
        )
        return envelopes

    # ==================== Rules ====================

    def _pull_request(self, delivery_id: str, payload: dict[str, Any]) -> list[TaskEnvelope]:
        action = payload.get("action")
        fields = extract_common_fields(payload)
        if not fields["repository"] or not fields["number"]:
            logger.info("pull_request event without repository/number ignored",
                        extra_data={"delivery_id": delivery_id})
            return []

        tasks: list[TaskEnvelope] = []
        if action in ("opened", "reopened"):
            if self.new_pr_labels:
                tasks.append(_envelope(
                    "pull_request", delivery_id, TaskType.LABEL,
                    {**fields, "labels": list(self.new_pr_labels)}, payload,
                ))
            tasks.append(_envelope("pull_request", delivery_id, TaskType.TRIGGER_CI, fields, payload))
        elif action == "synchronize":
            tasks.append(_envelope("pull_request", delivery_id, TaskType.TRIGGER_CI, fields, payload))
        return tasks

    def _is_own_comment(self, login: str | None) -> bool:
        if not login:
            return False
        login = login.lower()
        return login in (self.bot_login.lower(), f"{self.bot_login.lower()}[bot]")

    def _issue_comment(self, delivery_id: str, payload: dict[str, Any]) -> list[TaskEnvelope]:
        if payload.get("action") != "created":
            return []
        issue = _object(payload.get("issue"))
        if not issue.get("pull_request"):
            return []
        comment = _object(payload.get("comment"))
        author = _text(_object(comment.get("user")).get("login"))
        if self._is_own_comment(author):
            return []

        match = self._command_re.search(_text(comment.get("body")) or "")
        if match is None:
            return []

        fields = extract_common_fields(payload)
        if not fields["repository"] or not fields["number"]:
            return []
        fields["sender"] = author or fields["sender"]

        command = match.group("command").strip().rstrip(".!")
        words = command.lower().split()

        if words[:1] == ["merge"]:
            return [_envelope("issue_comment", delivery_id, TaskType.MERGE, fields, payload)]
        if words[:1] in (["restart"], ["rerun"]):
            return [_envelope("issue_comment", delivery_id, TaskType.TRIGGER_CI, fields, payload)]
        if words[:2] == ["add", "label"] and len(words) > 2:
            label = command.split(None, 2)[2].strip()
            return [_envelope(
                "issue_comment", delivery_id, TaskType.LABEL, {**fields, "labels": [label]}, payload,
            )]

        return [_envelope(
            "issue_comment", delivery_id, TaskType.COMMENT,
            {**fields, "body": HELP_TEXT.format(login=self.bot_login)}, payload,
        )]
