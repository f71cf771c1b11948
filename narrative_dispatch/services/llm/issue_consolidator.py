"""
Consolidação de resultados parciais (um por janela) em um resultado único.

Janelas sobrepostas reportam o mesmo problema mais de uma vez. Issues são
agrupadas pela chave (type, primeiros 50 caracteres da descrição normalizada);
a primeira ocorrência cria a entrada e as seguintes só acrescentam cenas e
janelas, nunca sobrescrevem.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from narrative_dispatch.schemas.analysis import AnalysisResult, NarrativeIssue

logger = logging.getLogger(__name__)

KEY_PREFIX_CHARS = 50
_WHITESPACE = re.compile(r"\s+")


@dataclass
class RawIssue:
    type: str
    description: str
    severity: str = "moderate"
    affected_scenes: List[str] = field(default_factory=list)
    suggestion: Optional[str] = None
    window_id: Optional[int] = None

    @classmethod
    def from_narrative_issue(cls, issue: NarrativeIssue, window_id: Optional[int] = None) -> "RawIssue":
        return cls(
            type=issue.type,
            description=issue.description,
            severity=issue.severity,
            affected_scenes=list(issue.affected_scenes),
            suggestion=issue.suggestion,
            window_id=window_id,
        )


@dataclass
class ConsolidatedIssue:
    type: str
    severity: str
    description: str
    affected_scenes: List[str] = field(default_factory=list)
    window_ids: List[int] = field(default_factory=list)
    suggestion: Optional[str] = None
    occurrences: int = 1

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "affected_scenes": list(self.affected_scenes),
            "window_ids": list(self.window_ids),
            "suggestion": self.suggestion,
            "occurrences": self.occurrences,
        }


@dataclass
class WindowOutcome:
    """Resultado de uma janela: payload validado ou o tipo do erro."""
    window_index: int
    payload: Optional[AnalysisResult] = None
    error_kind: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.payload is not None


@dataclass
class ConsolidationReport:
    issues: List[ConsolidatedIssue]
    payloads: List[AnalysisResult]
    windows_total: int
    windows_failed: int
    failed_windows: List[int]

    @property
    def complete(self) -> bool:
        return self.windows_failed == 0

    def to_dict(self) -> dict:
        return {
            "complete": self.complete,
            "windows_total": self.windows_total,
            "windows_failed": self.windows_failed,
            "failed_windows": list(self.failed_windows),
            "issues": [issue.to_dict() for issue in self.issues],
            "payloads": [p.model_dump(by_alias=False) for p in self.payloads],
        }


def normalize_description(description: str) -> str:
    return _WHITESPACE.sub(" ", description.strip().lower())


def merge_key(issue: RawIssue) -> Tuple[str, str]:
    return issue.type, normalize_description(issue.description)[:KEY_PREFIX_CHARS]


def description_similarity(text1: str, text2: str) -> float:
    """Sobreposição de palavras (0.0 a 1.0); 1.0 se um texto contém o outro."""
    text1_lower = normalize_description(text1)
    text2_lower = normalize_description(text2)
    if not text1_lower or not text2_lower:
        return 0.0
    if text1_lower in text2_lower or text2_lower in text1_lower:
        return 1.0

    words1 = set(text1_lower.split())
    words2 = set(text2_lower.split())
    common_words = words1 & words2
    return len(common_words) / max(len(words1), len(words2))


def _union(target: list, values: Iterable) -> None:
    for value in values:
        if value not in target:
            target.append(value)


def _find_similar(
    merged: List[ConsolidatedIssue], issue: RawIssue, threshold: float
) -> Optional[ConsolidatedIssue]:
    for candidate in merged:
        if candidate.type != issue.type:
            continue
        if issue.affected_scenes and candidate.affected_scenes and not (
            set(issue.affected_scenes) & set(candidate.affected_scenes)
        ):
            continue
        if description_similarity(candidate.description, issue.description) >= threshold:
            return candidate
    return None


def merge_issues(
    issues: Sequence[RawIssue], similarity_threshold: Optional[float] = None
) -> List[ConsolidatedIssue]:
    """
    Agrupa issues pela chave (type, prefixo da descrição normalizada).

    Args:
        issues: Issues na ordem em que foram produzidas (ordem das janelas)
        similarity_threshold: Se definido, issues do mesmo tipo com cenas em
            comum e sobreposição de palavras >= threshold também são unidas

    Returns:
        Issues consolidadas em ordem de primeira ocorrência
    """
    by_key: Dict[Tuple[str, str], ConsolidatedIssue] = {}
    merged: List[ConsolidatedIssue] = []

    for issue in issues:
        key = merge_key(issue)
        existing = by_key.get(key)
        if existing is None and similarity_threshold is not None:
            existing = _find_similar(merged, issue, similarity_threshold)

        if existing is None:
            consolidated = ConsolidatedIssue(
                type=issue.type,
                severity=issue.severity,
                description=issue.description,
                affected_scenes=[],
                window_ids=[],
                suggestion=issue.suggestion,
            )
            _union(consolidated.affected_scenes, issue.affected_scenes)
            if issue.window_id is not None:
                consolidated.window_ids.append(issue.window_id)
            by_key[key] = consolidated
            merged.append(consolidated)
            continue

        existing.occurrences += 1
        _union(existing.affected_scenes, issue.affected_scenes)
        if issue.window_id is not None:
            _union(existing.window_ids, [issue.window_id])
        if not existing.suggestion and issue.suggestion:
            existing.suggestion = issue.suggestion
        by_key.setdefault(key, existing)

    if len(merged) < len(issues):
        logger.debug(f"merge_issues: {len(issues)} issues → {len(merged)} consolidadas")
    return merged


def consolidate(
    outcomes: Iterable[WindowOutcome], similarity_threshold: Optional[float] = None
) -> ConsolidationReport:
    """
    Barreira do job: junta os resultados de todas as janelas.

    A ordem de conclusão das janelas não importa; os resultados são
    ordenados pelo índice da janela antes do merge.
    """
    ordered = sorted(outcomes, key=lambda o: o.window_index)
    raw_issues: List[RawIssue] = []
    payloads: List[AnalysisResult] = []
    failed: List[int] = []

    for outcome in ordered:
        if not outcome.succeeded:
            failed.append(outcome.window_index)
            continue
        payloads.append(outcome.payload)
        raw_issues.extend(
            RawIssue.from_narrative_issue(issue, outcome.window_index)
            for issue in outcome.payload.extract_issues()
        )

    report = ConsolidationReport(
        issues=merge_issues(raw_issues, similarity_threshold),
        payloads=payloads,
        windows_total=len(ordered),
        windows_failed=len(failed),
        failed_windows=failed,
    )
    if failed:
        logger.warning(
            f"⚠️ consolidate: resultado parcial, {len(failed)}/{len(ordered)} janelas ausentes {failed}"
        )
    return report
