"""Per-container destination topic and tag resolution."""

from logdriver.models import ContainerInfo

ENV_TOPIC = "LOG_TOPIC"
ENV_LOG_TAG = "LOG_TAG"

CONTAINER_NAME_PLACEHOLDER = "$CONTAINERNAME"
CONTAINER_ID_PLACEHOLDER = "$CONTAINERID"


def parse_env(env: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` entries; later keys win, entries without '=' are skipped."""
    result: dict[str, str] = {}
    for item in env:
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        result[key] = value
    return result


def _substitute(value: str, info: ContainerInfo) -> str:
    if value == CONTAINER_NAME_PLACEHOLDER:
        return info.container_name
    if value == CONTAINER_ID_PLACEHOLDER:
        return info.container_id
    return value


def _resolve(env_key: str, default: str, info: ContainerInfo) -> str:
    env = parse_env(info.container_env)
    value = env.get(env_key, default)
    return _substitute(value, info)


def resolve_topic(default: str, info: ContainerInfo) -> str:
    """Return the container's topic: env override, then placeholder substitution."""
    return _resolve(ENV_TOPIC, default, info)


def resolve_tag(default: str, info: ContainerInfo) -> str:
    """Return the container's tag: env override, then placeholder substitution."""
    return _resolve(ENV_LOG_TAG, default, info)
