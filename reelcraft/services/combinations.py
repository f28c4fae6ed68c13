"""Automatic combination generation from selected clips and voiceovers."""

from collections.abc import Iterator
from typing import Optional

from reelcraft.schemas.composition import GeneratedCombination


def _iter_combinations(
    hook_clip_ids: list[int],
    body_clip_ids: list[int],
    cat_clip_ids: list[int],
    voiceover_ids: list[int],
) -> Iterator[GeneratedCombination]:
    hooks: list[Optional[int]] = list(hook_clip_ids) or [None]
    cats: list[Optional[int]] = list(cat_clip_ids) or [None]

    for voiceover_id in voiceover_ids:
        for hook_id in hooks:
            for cat_id in cats:
                if body_clip_ids:
                    # All body clips together, then each body clip on its own
                    body_sets = [list(body_clip_ids)] + [[body_id] for body_id in body_clip_ids]
                elif hook_id is None and cat_id is None:
                    continue
                else:
                    body_sets = [[]]

                for body in body_sets:
                    yield GeneratedCombination(
                        hook_clip_id=hook_id,
                        body_clip_ids=body,
                        cat_clip_id=cat_id,
                        voiceover_id=voiceover_id,
                    )


def generate_combinations(
    hook_clip_ids: list[int],
    body_clip_ids: list[int],
    cat_clip_ids: list[int],
    voiceover_ids: list[int],
    max_combinations: int = 20,
) -> list[GeneratedCombination]:
    """
    Enumerate combinations for voiceover x hook x cat.

    A missing hook or cat list contributes a single "none" choice. For each
    (voiceover, hook, cat) there is one combination with every body clip,
    followed by one per individual body clip. Without body clips the
    combination carries only the hook and/or cat; a combination with no video
    source at all is never produced.

    Args:
        hook_clip_ids: Candidate hook clips
        body_clip_ids: Candidate body clips, in playback order
        cat_clip_ids: Candidate call-to-action clips
        voiceover_ids: Voiceovers to pair with each video combination
        max_combinations: Upper bound on the number of combinations returned

    Returns:
        At most ``max_combinations`` combinations in generation order
    """
    if max_combinations <= 0:
        return []

    combinations: list[GeneratedCombination] = []
    for combination in _iter_combinations(hook_clip_ids, body_clip_ids, cat_clip_ids, voiceover_ids):
        combinations.append(combination)
        if len(combinations) >= max_combinations:
            break
    return combinations
