import unicodedata
from typing import Tuple

# Romanian letters sort right after their base letter: a < ă < â < b ... i < î, s < ș, t < ț
_ROMANIAN_LETTERS = {
    'ă': ('a', 1),
    'â': ('a', 2),
    'î': ('i', 1),
    'ș': ('s', 1),
    'ş': ('s', 1),
    'ț': ('t', 1),
    'ţ': ('t', 1),
}


def _char_weights(char: str) -> Tuple[int, ...]:
    lowered = char.casefold()
    if lowered in _ROMANIAN_LETTERS:
        base, variant = _ROMANIAN_LETTERS[lowered]
        return (ord(base) * 4 + variant,)
    decomposed = unicodedata.normalize('NFD', lowered)
    return tuple(ord(c) * 4 for c in decomposed if not unicodedata.combining(c))


def ro_sort_key(name: str) -> Tuple[Tuple[int, ...], str]:
    name = name or ''
    weights = []
    for char in name.strip():
        weights.extend(_char_weights(char))
    return tuple(weights), name


def sorted_by_name(items, name=lambda item: item.name):
    return sorted(items, key=lambda item: ro_sort_key(name(item)))
