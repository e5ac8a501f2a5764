"""Municipality name normalization for cross-poll matching.

Upstream spells the same concelho in several ways ("Proença-a-Nova",
"Proenca a Nova", "PROENÇA A NOVA"). Everything is folded to a canonical
key: lowercase, no accents, no separators. The key is what the state file
is indexed by, so it has to stay stable across releases.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

# --- Declared alternate spellings, keyed by canonical key ---
MUNICIPIO_SYNONYMS: Dict[str, List[str]] = {
    "proencaanova": ["proenca a nova", "proenca-anova", "proenca nova"],
    "vilavelhaderodao": ["vila velha de rodao", "v v rodao", "vv rodao"],
    "castanheiradepera": ["castanheira de pera", "castanheira pera"],
    "pedrogaogrande": ["pedrogao grande", "pedrogao-grande"],
}

# Truncated keys written by older builds that lost non-ASCII letters
# instead of folding them ("Sertã" -> "sert").
KEY_CORRECTIONS: Dict[str, str] = {
    "sert": "serta",
    "figueirdosvinhos": "figueirodosvinhos",
    "proenaanova": "proencaanova",
    "vilavelhaderdo": "vilavelhaderodao",
}

_SEPARATORS = re.compile(r"[-_]")
_WHITESPACE = re.compile(r"\s+")


def strip_accents(s: str) -> str:
    """Remove diacritics, keeping the base letters."""
    decomposed = unicodedata.normalize("NFD", s)
    kept = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return unicodedata.normalize("NFC", kept)


def fold(s: Optional[str]) -> str:
    """Case- and accent-insensitive form used for attribute comparisons."""
    if not s:
        return ""
    return strip_accents(s.strip().lower())


def normalize(raw: Optional[str]) -> str:
    """Canonical area key for a raw municipality name.

    Empty or missing input yields "" and callers decide what to do with it.
    """
    if not raw:
        return ""
    key = strip_accents(raw.strip().lower())
    key = _SEPARATORS.sub(" ", key)
    key = _WHITESPACE.sub(" ", key).strip()
    return key.replace(" ", "")


def synonyms(key: str) -> List[str]:
    return MUNICIPIO_SYNONYMS.get(key, [])


def expand(area_name: str) -> Set[str]:
    """All keys that should resolve to the area `area_name` names."""
    key = normalize(area_name)
    keys = {key}
    keys.update(normalize(s) for s in synonyms(key))
    return keys


@dataclass
class WantedSet:
    """The configured municipalities, indexed every way the pipeline needs."""

    # canonical key -> display name as configured
    display: Dict[str, str] = field(default_factory=dict)
    # canonical key -> alias keys (canonical key included, first)
    aliases: Dict[str, List[str]] = field(default_factory=dict)
    _flat: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)
    _index: Dict[str, str] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.reindex()

    def reindex(self) -> None:
        """Rebuild the lookup tables; call after editing `aliases`."""
        self._flat = set()
        self._index = {}
        for canon, keys in self.aliases.items():
            self._flat.update(keys)
            for k in keys:
                self._index.setdefault(k, canon)
            self._index[canon] = canon

    @property
    def flat(self) -> Set[str]:
        return self._flat

    @property
    def alias_to_canonical(self) -> Dict[str, str]:
        return self._index

    def resolve(self, key: str) -> str:
        """Map an alias key onto its canonical key; unknown keys pass through."""
        return self._index.get(key, key)

    def __contains__(self, key: str) -> bool:
        return key in self._flat

    def __iter__(self):
        return iter(self.aliases)

    def __len__(self) -> int:
        return len(self.aliases)


def make_wanted_set(names: Iterable[str]) -> WantedSet:
    wanted = WantedSet()
    for name in names:
        key = normalize(name)
        if not key:
            continue
        alias_keys = [key]
        for alt in sorted(expand(name) - {key}):
            alias_keys.append(alt)
        wanted.display.setdefault(key, name.strip())
        wanted.aliases[key] = alias_keys
    wanted.reindex()
    return wanted


def area_label(names: List[str]) -> str:
    """Human list: "A", "A e B", "A, B e C"."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " e " + names[-1]
