"""
Tipos de job de análise: prompt de sistema, orçamento de completion e schema.

Os prompts são strings opacas para a camada de dispatch; o que importa aqui é
o schema de resposta e o orçamento de tokens. Alterar prompts apenas aqui.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Type

from narrative_dispatch.schemas.analysis import (
    AnalysisResult,
    OpeningAnalysisResult,
    PacingAnalysisResult,
    PlotHoleResult,
    SceneAnalysisResult,
    StoryStructureResult,
)
from .errors import UnknownJobTypeError


@dataclass(frozen=True)
class JobType:
    name: str
    system_prompt: str
    completion_tokens: int
    schema: Type[AnalysisResult]
    content_type: str = "prose"
    max_words: Optional[int] = None  # trunca o texto antes de dividir (ex.: só a abertura)


SCENE_ANALYSIS_PROMPT = """You are an expert literary analyst. Analyze this scene for narrative elements, emotional content, pacing, and structural function. Focus on objective, measurable qualities that aid revision.

Return analysis as JSON with this exact structure:
{
  "summary": "2-3 sentence summary of key events",
  "primaryEmotion": "dominant emotion",
  "secondaryEmotion": "secondary emotion or null",
  "tensionLevel": 0-100,
  "pacingScore": 0-100,
  "functionTags": ["exposition", "rising_action", "climax", "falling_action", "resolution", "character_development", "world_building", "dialogue_heavy", "action_sequence", "internal_monologue"],
  "voiceFingerprint": {
    "averageSentenceLength": number,
    "complexSentenceRatio": 0-1,
    "dialogueToNarrationRatio": 0-1,
    "commonWords": ["most", "frequent", "words"],
    "uniqueStyleMarkers": ["distinctive", "phrases"],
    "emotionalTone": "description"
  },
  "conflictPresent": true/false,
  "characterIntroduced": true/false
}"""

OPENING_ANALYSIS_PROMPT = """You are a literary agent's first reader. Evaluate manuscript openings with publishing industry expectations. Be rigorous but constructive.

Analyze these opening pages for:
1. Hook effectiveness (compels continued reading?)
2. Voice establishment (distinctive and appropriate?)
3. Character introduction (compelling and clear goals?)
4. Conflict seeds (tension/problem evident?)
5. Genre fit (meets expectations?)

Return JSON:
{
  "hookType": "action|voice|mystery|character|setting",
  "hookStrength": 0-100,
  "voiceEstablished": true/false,
  "characterEstablished": true/false,
  "conflictEstablished": true/false,
  "genreAppropriate": true/false,
  "similarToComps": ["comp1", "comp2"],
  "agentReadinessScore": 0-100,
  "analysisNotes": "Specific, actionable feedback",
  "firstLineStrength": 0-100,
  "suggestions": ["specific", "actionable", "improvements"]
}"""

PLOT_HOLES_PROMPT = """Identify plot holes, continuity errors, and logical inconsistencies in this passage. Focus on:
- Character locations/capabilities
- Object appearance/disappearance
- Timeline inconsistencies
- Contradictory facts
- Missing logical connections

Return JSON:
{
  "plotHoles": [
    {
      "type": "continuity|logic|character|timeline|object",
      "severity": "minor|moderate|major",
      "description": "Clear description of the issue",
      "affectedScenes": ["scene_ids"],
      "suggestion": "How to fix this issue"
    }
  ]
}"""

STORY_STRUCTURE_PROMPT = """You are a developmental editor. Identify structural plot points and structural issues in this passage of a longer manuscript.

Return JSON:
{
  "plotPoints": [
    {"type": "inciting_incident|first_plot_point|midpoint|climax|resolution", "description": "...", "location": word_position, "effectiveness": 0-100, "suggestions": ["..."]}
  ],
  "pacingScore": 0-100,
  "issues": [
    {"type": "...", "severity": "low|medium|high|critical", "location": word_position, "description": "...", "suggestion": "..."}
  ]
}"""

PACING_ANALYSIS_PROMPT = """You are a pacing expert analyzing manuscript structure against genre conventions.

Return JSON:
{
  "beatsPerThousand": number,
  "tensionArc": [0-100 values for each act],
  "compTitleComparison": {
    "title": "Similar novel",
    "similarities": ["aspects that align"],
    "differences": ["aspects that diverge"],
    "alignmentScore": 0-100
  },
  "suggestions": "Specific pacing improvements needed",
  "actBreaks": [scene_number_for_act_1_end, scene_number_for_act_2_end]
}"""


JOB_TYPES: Dict[str, JobType] = {
    "scene_analysis": JobType("scene_analysis", SCENE_ANALYSIS_PROMPT, 1500, SceneAnalysisResult),
    "opening_analysis": JobType(
        "opening_analysis", OPENING_ANALYSIS_PROMPT, 1500, OpeningAnalysisResult, max_words=1250
    ),
    "plot_holes": JobType("plot_holes", PLOT_HOLES_PROMPT, 1200, PlotHoleResult),
    "story_structure": JobType("story_structure", STORY_STRUCTURE_PROMPT, 1500, StoryStructureResult),
    "pacing_analysis": JobType("pacing_analysis", PACING_ANALYSIS_PROMPT, 1200, PacingAnalysisResult),
}


def get_job_type(name: str) -> JobType:
    job_type = JOB_TYPES.get(name)
    if job_type is None:
        raise UnknownJobTypeError(
            f"Tipo de job desconhecido: '{name}' (disponíveis: {', '.join(JOB_TYPES)})"
        )
    return job_type
