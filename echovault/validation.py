"""
Input validation for EchoVault.

Validates caller inputs before they reach the engine, the governor, or a
paid provider.
"""

from typing import Any, Optional


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


MAX_INPUT_LENGTH = 1_000_000  # 1M characters (~250K tokens)
MAX_EMBED_DIMENSIONS = 4096
MAX_COST_USD = 100.0  # Sanity check: $100 per request
MAX_BATCH_TASKS = 32
VALID_TASK_TYPES = ("chat", "embed")
VALID_PRIORITIES = ("low", "medium", "high")


def validate_text(text: Any, name: str = "text") -> None:
    """
    Validate a text input.

    Empty text is allowed; callers turn it into a zero-confidence result.

    Raises:
        ValidationError: If text is not a string or is too long
    """
    if not isinstance(text, str):
        raise ValidationError(f"{name} must be a string, got {type(text).__name__}")

    if len(text) > MAX_INPUT_LENGTH:
        raise ValidationError(
            f"{name} too long: {len(text):,} characters "
            f"(max: {MAX_INPUT_LENGTH:,})"
        )


def validate_max_length(max_length: Any) -> None:
    """
    Validate a summary length bound.

    Raises:
        ValidationError: If max_length is not a positive integer
    """
    if not isinstance(max_length, int) or isinstance(max_length, bool):
        raise ValidationError(
            f"max_length must be an integer, got {type(max_length).__name__}"
        )

    if max_length <= 0:
        raise ValidationError(f"max_length must be positive, got {max_length}")


def validate_dimensions(dimensions: Any) -> None:
    """
    Validate embedding dimensionality.

    Raises:
        ValidationError: If dimensions is invalid
    """
    if not isinstance(dimensions, int) or isinstance(dimensions, bool):
        raise ValidationError(
            f"dimensions must be an integer, got {type(dimensions).__name__}"
        )

    if dimensions <= 0 or dimensions > MAX_EMBED_DIMENSIONS:
        raise ValidationError(
            f"dimensions must be between 1 and {MAX_EMBED_DIMENSIONS}, got {dimensions}"
        )


def validate_cost(cost_usd: Optional[float], name: str = "cost_usd") -> None:
    """
    Validate a cost amount.

    Raises:
        ValidationError: If cost is negative, not a number, or absurd
    """
    if cost_usd is None:
        return

    if not isinstance(cost_usd, (int, float)) or isinstance(cost_usd, bool):
        raise ValidationError(
            f"{name} must be a number, got {type(cost_usd).__name__}"
        )

    if cost_usd < 0:
        raise ValidationError(f"{name} cannot be negative, got {cost_usd}")

    if cost_usd > MAX_COST_USD:
        raise ValidationError(
            f"{name} too large: ${cost_usd:.2f} "
            f"(max: ${MAX_COST_USD:.2f} per request)"
        )


def validate_task(task: Any) -> None:
    """
    Validate one gateway task payload.

    Raises:
        ValidationError: If the task is malformed
    """
    if not isinstance(task, dict):
        raise ValidationError(f"task must be an object, got {type(task).__name__}")

    task_type = task.get("type")
    if task_type not in VALID_TASK_TYPES:
        raise ValidationError(
            f"task type must be one of {', '.join(VALID_TASK_TYPES)}, got {task_type!r}"
        )

    if "input" not in task or task["input"] is None:
        raise ValidationError("task input is required")

    raw = task["input"]
    if task_type == "embed":
        items = raw if isinstance(raw, list) else [raw]
        if not items:
            raise ValidationError("embed input cannot be empty")
        for item in items:
            if not isinstance(item, str):
                raise ValidationError("embed input must be a string or a list of strings")
            validate_text(item, name="embed input")
    elif isinstance(raw, str):
        validate_text(raw, name="chat input")

    priority = task.get("priority", "medium")
    if priority not in VALID_PRIORITIES:
        raise ValidationError(
            f"priority must be one of {', '.join(VALID_PRIORITIES)}, got {priority!r}"
        )

    params = task.get("params")
    if params is not None and not isinstance(params, dict):
        raise ValidationError("params must be an object")


def validate_payload(payload: Any) -> None:
    """
    Validate a gateway request body holding `task` or `tasks`.

    Raises:
        ValidationError: If the body is malformed
    """
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")

    if "tasks" in payload:
        tasks = payload["tasks"]
        if not isinstance(tasks, list) or not tasks:
            raise ValidationError("tasks must be a non-empty list")
        if len(tasks) > MAX_BATCH_TASKS:
            raise ValidationError(
                f"too many tasks: {len(tasks)} (max: {MAX_BATCH_TASKS})"
            )
        for task in tasks:
            validate_task(task)
    elif "task" in payload:
        validate_task(payload["task"])
    else:
        raise ValidationError("no task provided")
