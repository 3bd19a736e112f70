import shortuuid


def generate_id() -> str:
    """Primary key for every stored record (22 chars)."""
    return shortuuid.uuid()


def generate_reference(prefix: str, length: int = 14) -> str:
    return f"{prefix}-{shortuuid.ShortUUID().random(length=length)}"
