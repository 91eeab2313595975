"""Resolve loose, user-typed model names ("sonnet", "gpt mini", "use opus") to model ids."""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass

from nebo.ai.models_config import ModelsConfig
from nebo.ai.selector import parse_model_id

logger = logging.getLogger(__name__)

MIN_MATCH_SCORE = 50
MAX_EDIT_DISTANCE = 3

VARIANT_TOKENS = (
    "lightning", "preview", "mini", "fast", "turbo", "lite",
    "beta", "small", "nano", "instant", "pro", "thinking",
)

REQUEST_PATTERNS = ("use ", "switch to ", "change to ", "try ", "with ")
_REQUEST_SUFFIXES = (" model", " please", " for this")

_SPLIT_CHARS = "-_."
_GENERIC_PARTS = {"claude", "gpt"}


def normalize(s: str) -> str:
    return "".join(ch for ch in s.lower() if ch not in "-. _")


def _is_numeric(s: str) -> bool:
    return bool(s) and all("0" <= ch <= "9" for ch in s)


def _split_id(model_id: str) -> list[str]:
    parts = [model_id.lower()]
    for sep in _SPLIT_CHARS:
        parts = [p for part in parts for p in part.split(sep)]
    return [p for p in parts if p]


def extract_variants(s: str) -> list[str]:
    lower = s.lower()
    return [v for v in VARIANT_TOKENS if v in lower]


def bounded_levenshtein(a: str, b: str, max_dist: int) -> int | None:
    """Edit distance if it is <= max_dist, else None.

    Stops as soon as a whole row exceeds max_dist.
    """
    if a == b:
        return 0
    if not a or not b or abs(len(a) - len(b)) > max_dist:
        return None

    prev = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        curr = [i] + [0] * len(b)
        row_min = i
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr[j] = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost)
            row_min = min(row_min, curr[j])
        if row_min > max_dist:
            return None
        prev = curr

    dist = prev[len(b)]
    return dist if dist <= max_dist else None


@dataclass
class _Candidate:
    model_id: str
    score: int
    alias: str


class FuzzyMatcher:
    """Alias table over the model catalog plus a scored matcher.

    Alias precedence: user aliases, provider names (first active model),
    CLI command names, model ids, display names, id fragments, kind tags,
    then the "api" / "cli" / "terminal" / "agentic" shortcuts. An earlier
    alias is never overwritten by a fragment or shortcut.
    """

    def __init__(self, config: ModelsConfig | None) -> None:
        self.config = config
        self.aliases: dict[str, str] = {}
        self._build_aliases()

    def _build_aliases(self) -> None:
        config = self.config
        if config is None:
            return

        for alias in config.aliases:
            self.aliases[alias.alias.lower()] = alias.model_id

        kind_models: dict[str, list[str]] = {}
        kind_preferred: dict[str, str] = {}
        first_api = ""
        first_cli = ""

        for provider_name in sorted(config.providers):
            models = config.providers[provider_name]
            active = [m for m in models if m.is_active()]
            if not active:
                continue

            default_id = f"{provider_name}/{active[0].id}"
            self.aliases[provider_name.lower()] = default_id

            creds = config.get_credentials(provider_name)
            if creds is not None and creds.command:
                first_cli = first_cli or default_id
                self.aliases[creds.command.lower()] = default_id
            elif creds is not None and (creds.api_key or creds.base_url):
                first_api = first_api or default_id

            for m in active:
                full_id = f"{provider_name}/{m.id}"
                self.aliases[m.id.lower()] = full_id
                self.aliases[full_id.lower()] = full_id
                if m.display_name:
                    self.aliases[m.display_name.lower()] = full_id

                for part in _split_id(m.id):
                    if len(part) < 3 or _is_numeric(part) or part in _GENERIC_PARTS:
                        continue
                    self.aliases.setdefault(part, full_id)

                for kind in m.kind:
                    kind = kind.lower()
                    kind_models.setdefault(kind, []).append(full_id)
                    if m.preferred:
                        kind_preferred[kind] = full_id

        for kind, ids in kind_models.items():
            if kind not in self.aliases:
                self.aliases[kind] = kind_preferred.get(kind, ids[0])

        if first_api:
            self.aliases.setdefault("api", first_api)
        if first_cli:
            for alias in ("cli", "terminal", "agentic"):
                self.aliases.setdefault(alias, first_cli)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match(self, text: str) -> str:
        """Best model id for text, or "" when nothing scores high enough."""
        text = text.strip().lower()
        if not text:
            return ""

        normalized = normalize(text)
        words = text.split()
        variants = extract_variants(text)

        best: _Candidate | None = None
        for alias in sorted(self.aliases):
            model_id = self.aliases[alias]
            if not self.is_model_available(model_id):
                continue
            score = self._score(text, normalized, words, variants, alias, model_id)
            if score <= 0:
                continue
            if (
                best is None
                or score > best.score
                or (score == best.score and len(model_id) < len(best.model_id))
            ):
                best = _Candidate(model_id, score, alias)

        if best is None or best.score < MIN_MATCH_SCORE:
            return ""
        logger.debug("Fuzzy match %r -> %s via %r (score %d)", text, best.model_id, best.alias, best.score)
        return best.model_id

    def _score(
        self,
        text: str,
        normalized: str,
        words: list[str],
        variants: list[str],
        alias: str,
        model_id: str,
    ) -> int:
        score = 0
        alias = alias.lower()
        norm_alias = normalize(alias)
        provider, model = parse_model_id(model_id)
        provider, model = provider.lower(), (model.lower() if provider else "")

        if text == alias:
            score += 300
        if normalized == norm_alias:
            score += 250

        if text.startswith(alias):
            score += 150
        if alias.startswith(text):
            score += 140
        if normalized.startswith(norm_alias):
            score += 130
        if norm_alias.startswith(normalized):
            score += 120

        if alias in text:
            score += 100
        if text in alias:
            score += 90
        if norm_alias in normalized and len(norm_alias) >= 3:
            score += 80
        if normalized in norm_alias and len(normalized) >= 3:
            score += 70

        for word in words:
            if len(word) < 3:
                continue
            if word == alias:
                score += 120
            elif word in alias:
                score += 60
            elif word in model:
                score += 50
            elif word in provider:
                score += 40

        dist = bounded_levenshtein(text, alias, MAX_EDIT_DISTANCE)
        if dist is not None:
            score += (4 - dist) * 50
        norm_dist = bounded_levenshtein(normalized, norm_alias, MAX_EDIT_DISTANCE)
        if norm_dist is not None:
            score += (4 - norm_dist) * 40

        model_variants = list(dict.fromkeys(extract_variants(alias) + extract_variants(model)))
        if variants:
            matched = sum(1 for v in variants if v in model_variants)
            if matched:
                score += matched * 60
            elif model_variants:
                score -= 30
        elif model_variants:
            # user did not ask for a variant, prefer the base model
            score -= len(model_variants) * 15

        return score

    # ------------------------------------------------------------------
    # Availability and prompt helpers
    # ------------------------------------------------------------------

    def is_model_available(self, model_id: str) -> bool:
        config = self.config
        if config is None:
            return True
        provider_id, model_name = parse_model_id(model_id)
        if not provider_id:
            return False
        if config.credentials is not None:
            creds = config.credentials.get(provider_id)
            if creds is None or not creds.has_any():
                return False
        models = config.providers.get(provider_id)
        if models is None:
            return False
        return any(m.id == model_name and m.is_active() for m in models)

    def get_aliases(self) -> list[str]:
        """One "- alias: model" line per available model, using its shortest alias."""
        shortest: dict[str, str] = {}
        for alias, model_id in self.aliases.items():
            if len(alias) < 3 or "/" in alias or _is_numeric(alias):
                continue
            existing = shortest.get(model_id)
            if existing is None or len(alias) < len(existing) or (len(alias) == len(existing) and alias < existing):
                shortest[model_id] = alias
        return sorted(
            f"- {alias}: {model_id}"
            for model_id, alias in shortest.items()
            if self.is_model_available(model_id)
        )


def parse_model_request(text: str) -> str:
    """Extract the model name from "use X", "switch to X", ... or "" if none."""
    text = text.strip().lower()
    for pattern in REQUEST_PATTERNS:
        idx = text.find(pattern)
        if idx == -1:
            continue
        remainder = text[idx + len(pattern):]
        for suffix in _REQUEST_SUFFIXES:
            remainder = remainder.removesuffix(suffix)
        remainder = "".join(
            ch for ch in remainder.strip() if not unicodedata.category(ch).startswith("P")
        )
        if remainder:
            return remainder
    return ""
