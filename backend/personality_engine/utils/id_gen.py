import secrets

def short_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(6)}"

def work_item_id(kind: str) -> str:
    """Dispatcher item ids: ``chat_1a2b3c4d5e6f`` / ``analyze_...``."""
    return short_id(kind)
