"""ID generators (CUID2) for provider configs, synced records and jobs."""

from cuid2 import cuid_wrapper

cuid_generator = cuid_wrapper()


def generate_cuid() -> str:
    """Generate a collision-resistant unique identifier (CUID2).

    Returns:
        A new CUID string.
    """
    result = cuid_generator()
    if not isinstance(result, str):
        raise TypeError(
            f"Expected str from cuid_generator, got {type(result).__name__}"
        )
    return result


def generate_job_id(provider_id: str) -> str:
    """Return a sync job id scoped to its provider (for log correlation)."""
    return f"{provider_id}:{generate_cuid()}"
