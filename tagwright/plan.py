"""Plan tracking for <plan> actions: an in-memory, numbered work list."""

from dataclasses import dataclass

from . import fmt
from .actions import PLAN_OPERATIONS, PLAN_STATUSES

MAX_ITEMS = 50
MAX_ITEM_TEXT = 500

_MARKERS = {"pending": " ", "in_progress": "~", "completed": "x"}


@dataclass
class PlanItem:
    id: str
    content: str
    status: str = "pending"
    description: str | None = None


class PlanState:
    def __init__(self, verbose: bool = False):
        self.items: list[PlanItem] = []
        self.verbose = verbose
        self._next_id = 1

    def process(self, operation: str, **options) -> dict:
        """Apply one plan operation; returns {"success", "message", "plan"?, "question"?}."""
        if operation not in PLAN_OPERATIONS:
            return self._fail(
                f"invalid operation {operation!r}, expected one of: {', '.join(PLAN_OPERATIONS)}"
            )
        handler = getattr(self, f"_op_{operation}")
        return handler(**options)

    def _op_add(self, content=None, description=None, **_) -> dict:
        content = (content or "").strip()
        if not content:
            return self._fail("'add' requires non-empty content")
        if len(content) > MAX_ITEM_TEXT:
            return self._fail(f"content exceeds {MAX_ITEM_TEXT} character limit, please shorten it")
        key = content.casefold()
        for item in self.items:
            if item.content.casefold() == key:
                return self._ok(f"Already planned: [{item.id}] {item.content}")
        if len(self.items) >= MAX_ITEMS:
            return self._fail(f"plan is full ({MAX_ITEMS} items max)")
        item = PlanItem(id=str(self._next_id), content=content, description=description)
        self._next_id += 1
        self.items.append(item)
        if self.verbose:
            fmt.info(f"Plan + [{item.id}] {content[:80]}")
        return self._ok(f"Added [{item.id}] {content}")

    def _op_update(self, id=None, status=None, content=None, description=None, **_) -> dict:
        item = self._find(id)
        if isinstance(item, str):
            return self._fail(item)
        if status is not None and status not in PLAN_STATUSES:
            return self._fail(
                f"invalid status {status!r}, expected one of: {', '.join(PLAN_STATUSES)}"
            )
        if status is None and content is None and description is None:
            return self._fail("'update' needs a status, content or description")
        if status is not None:
            item.status = status
        if content:
            item.content = content.strip()
        if description is not None:
            item.description = description
        return self._ok(f"Updated [{item.id}] {item.content} ({item.status})")

    def _op_complete(self, id=None, **_) -> dict:
        item = self._find(id)
        if isinstance(item, str):
            return self._fail(item)
        item.status = "completed"
        done = sum(1 for i in self.items if i.status == "completed")
        if self.verbose:
            fmt.info(f"Plan \u2713 [{item.id}] {item.content[:80]} ({done}/{len(self.items)})")
        return self._ok(f"Completed [{item.id}] {item.content} ({done}/{len(self.items)} done)")

    def _op_remove(self, id=None, **_) -> dict:
        item = self._find(id)
        if isinstance(item, str):
            return self._fail(item)
        self.items.remove(item)
        return self._ok(f"Removed [{item.id}] {item.content}")

    def _op_show(self, **_) -> dict:
        return self._ok(self.render() or "Plan is empty")

    def _op_clear(self, **_) -> dict:
        count = len(self.items)
        self.reset()
        return self._ok(f"Cleared {count} items")

    def _op_ask(self, question=None, **_) -> dict:
        question = (question or "").strip()
        if not question:
            return self._fail("'ask' requires a question")
        if self.verbose:
            fmt.info(f"? {question}")
        return {"success": True, "message": f"Question for the user: {question}", "question": question}

    def _find(self, item_id) -> PlanItem | str:
        if not item_id:
            return "an item id is required"
        for item in self.items:
            if item.id == str(item_id).strip():
                return item
        return f"no plan item with id {item_id!r}"

    def render(self) -> str:
        lines = []
        for item in self.items:
            line = f"[{_MARKERS[item.status]}] {item.id}. {item.content}"
            if item.description:
                line += f": {item.description}"
            lines.append(line)
        return "\n".join(lines)

    def snapshot(self) -> list[dict]:
        return [
            {"id": i.id, "content": i.content, "status": i.status, "description": i.description}
            for i in self.items
        ]

    def reset(self) -> None:
        """Drop every item and restart numbering. Used by REPL /clear."""
        self.items.clear()
        self._next_id = 1

    def _ok(self, message: str) -> dict:
        return {"success": True, "message": message, "plan": self.snapshot()}

    def _fail(self, message: str) -> dict:
        return {"success": False, "message": f"error: {message}"}
