"""
Deterministic cache key builders.

Keys are colon-joined so that different record kinds never collide inside
one SmartCache instance.
"""


def profile_key(profile_id: int | str, kind: str = "profile") -> str:
    """Build the key for a record looked up by id.

    Args:
        profile_id: Profile (or other record) id.
        kind: Record kind prefix.

    Returns:
        Key such as ``"profile:1234"``.
    """
    return f"{kind}:{str(profile_id).strip()}"


def race_key(state: str, race: str) -> str:
    """Build the key for a race page.

    Args:
        state: State name, e.g. ``"Ohio"``.
        race: Race label, e.g. ``"Senate"``.

    Returns:
        Lower-cased key such as ``"race:ohio:senate"``.
    """
    return f"race:{state.strip().lower()}:{race.strip().lower()}"
