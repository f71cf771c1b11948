"""
Schemas dos resultados de análise retornados pelos providers.

Um schema por tipo de job. A resposta do modelo é validada contra o schema
do job; qualquer divergência estrutural falha fechado (MalformedResponseError).
Os campos seguem o JSON pedido nos prompts (camelCase), com alias para
nomes Python.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _ResultModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NarrativeIssue(_ResultModel):
    """Problema narrativo apontado pelo modelo (plot hole, problema estrutural...)."""
    type: str = Field(..., min_length=1, description="continuity|logic|character|timeline|object|...")
    severity: str = Field("moderate", description="minor|moderate|major (ou low..critical)")
    description: str = Field(..., min_length=1)
    affected_scenes: List[str] = Field(default_factory=list, alias="affectedScenes")
    suggestion: Optional[str] = None
    location: Optional[int] = Field(None, description="Posição aproximada em palavras")

    @field_validator("affected_scenes", mode="before")
    @classmethod
    def coerce_scene_ids(cls, v):
        """Aceita ids numéricos e valor único; remove vazios."""
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        return [str(item).strip() for item in v if str(item).strip()]


class AnalysisResult(_ResultModel):
    """Base dos resultados. Tipos sem issues retornam lista vazia."""

    def extract_issues(self) -> List[NarrativeIssue]:
        return []


class VoiceFingerprint(_ResultModel):
    average_sentence_length: Optional[float] = Field(None, alias="averageSentenceLength")
    complex_sentence_ratio: Optional[float] = Field(None, alias="complexSentenceRatio", ge=0, le=1)
    dialogue_to_narration_ratio: Optional[float] = Field(None, alias="dialogueToNarrationRatio", ge=0, le=1)
    common_words: List[str] = Field(default_factory=list, alias="commonWords")
    unique_style_markers: List[str] = Field(default_factory=list, alias="uniqueStyleMarkers")
    emotional_tone: Optional[str] = Field(None, alias="emotionalTone")


class SceneAnalysisResult(AnalysisResult):
    summary: str
    primary_emotion: Optional[str] = Field(None, alias="primaryEmotion")
    secondary_emotion: Optional[str] = Field(None, alias="secondaryEmotion")
    tension_level: int = Field(..., alias="tensionLevel", ge=0, le=100)
    pacing_score: int = Field(..., alias="pacingScore", ge=0, le=100)
    function_tags: List[str] = Field(default_factory=list, alias="functionTags")
    voice_fingerprint: Optional[VoiceFingerprint] = Field(None, alias="voiceFingerprint")
    conflict_present: bool = Field(False, alias="conflictPresent")
    character_introduced: bool = Field(False, alias="characterIntroduced")


class OpeningAnalysisResult(AnalysisResult):
    hook_type: str = Field(..., alias="hookType")
    hook_strength: int = Field(..., alias="hookStrength", ge=0, le=100)
    voice_established: bool = Field(False, alias="voiceEstablished")
    character_established: bool = Field(False, alias="characterEstablished")
    conflict_established: bool = Field(False, alias="conflictEstablished")
    genre_appropriate: bool = Field(False, alias="genreAppropriate")
    similar_to_comps: List[str] = Field(default_factory=list, alias="similarToComps")
    agent_readiness_score: int = Field(..., alias="agentReadinessScore", ge=0, le=100)
    analysis_notes: str = Field("", alias="analysisNotes")
    first_line_strength: Optional[int] = Field(None, alias="firstLineStrength", ge=0, le=100)
    suggestions: List[str] = Field(default_factory=list)


class PlotHoleResult(AnalysisResult):
    plot_holes: List[NarrativeIssue] = Field(..., alias="plotHoles")

    def extract_issues(self) -> List[NarrativeIssue]:
        return list(self.plot_holes)


class PlotPoint(_ResultModel):
    type: str
    description: str
    location: Optional[int] = None
    effectiveness: Optional[int] = Field(None, ge=0, le=100)
    suggestions: List[str] = Field(default_factory=list)


class StoryStructureResult(AnalysisResult):
    plot_points: List[PlotPoint] = Field(default_factory=list, alias="plotPoints")
    pacing_score: Optional[int] = Field(None, alias="pacingScore", ge=0, le=100)
    issues: List[NarrativeIssue] = Field(default_factory=list)

    def extract_issues(self) -> List[NarrativeIssue]:
        return list(self.issues)


class CompTitleComparison(_ResultModel):
    title: str
    similarities: List[str] = Field(default_factory=list)
    differences: List[str] = Field(default_factory=list)
    alignment_score: Optional[int] = Field(None, alias="alignmentScore", ge=0, le=100)


class PacingAnalysisResult(AnalysisResult):
    beats_per_thousand: float = Field(..., alias="beatsPerThousand", ge=0)
    tension_arc: List[int] = Field(default_factory=list, alias="tensionArc")
    comp_title_comparison: Optional[CompTitleComparison] = Field(None, alias="compTitleComparison")
    suggestions: str = ""
    act_breaks: List[int] = Field(default_factory=list, alias="actBreaks")
