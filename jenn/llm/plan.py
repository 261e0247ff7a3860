"""Execution plan construction: primary -> legacy backup -> fallbacks."""

from jenn.schemas.llm import ModelOptions, ModelTarget

BACKUP_MODEL_NAME = "backup-model"


def build_execution_plan(options: ModelOptions) -> list[ModelTarget]:
    """Return the ordered list of model targets to attempt.

    Position 0 is always the configured primary. The legacy backup model, if
    any, comes second, followed by the fallbacks in their configured order.
    """
    plan = [
        ModelTarget(
            model=options.model,
            name=options.model_name,
            provider=options.provider,
        )
    ]

    backup = options.backup_model
    if backup is not None:
        name = getattr(backup, "name", None)
        provider = getattr(backup, "provider", None)
        plan.append(
            ModelTarget(
                model=backup,
                name=name if isinstance(name, str) else BACKUP_MODEL_NAME,
                provider=provider if isinstance(provider, str) else "unknown",
            )
        )

    plan.extend(options.fallbacks)
    return plan
