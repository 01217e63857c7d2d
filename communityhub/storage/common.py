"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from typing import List, Optional, Tuple

from communityhub.storage.models import Community

VALID_VOTE_VALUES = (1, -1)


# ============================================================================
# VOTING
# ============================================================================

def post_vote_transition(
    previous: Optional[int], value: int
) -> Tuple[Optional[int], int, int]:
    """Resolve a post vote against the caller's previous vote.

    Returns ``(new_vote, upvote_delta, downvote_delta)``. Repeating the same
    value removes the vote; the opposite value switches it.
    """
    if value not in VALID_VOTE_VALUES:
        raise ValueError(f"invalid vote value: {value}")
    if previous == value:
        return None, (-1 if value == 1 else 0), (-1 if value == -1 else 0)
    if previous is None:
        return value, (1 if value == 1 else 0), (1 if value == -1 else 0)
    return value, (1 if value == 1 else -1), (-1 if value == 1 else 1)


def comment_vote_transition(previous: Optional[int], value: int) -> Tuple[Optional[int], int]:
    """Resolve a comment vote; returns ``(new_vote, score_delta)``."""
    if value not in VALID_VOTE_VALUES:
        raise ValueError(f"invalid vote value: {value}")
    if previous == value:
        return None, -value
    if previous is None:
        return value, value
    return value, 2 * value


# ============================================================================
# SEED DATA
# ============================================================================

def default_communities() -> List[Community]:
    return [
        Community(
            id="the_bar_wardrobe",
            name="The Bar Wardrobe",
            description="A community for lawyers to discuss professional attire and courtroom excellence",
            tags=["lawyers", "community"],
        ),
        Community(
            id="gaming",
            name="Gaming",
            description="Builds, releases and everything played after hours",
            tags=["gaming"],
        ),
        Community(
            id="movies",
            name="Movies",
            description="Reviews, watchlists and premiere chatter",
            tags=["movies"],
        ),
    ]
