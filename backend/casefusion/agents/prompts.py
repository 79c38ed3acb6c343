"""Prompts for the forensic reasoning model.

Every structured prompt is sent with a JSON response schema, so the prompts
describe content and intent rather than output formatting.
"""

SUMMARIZE_EVIDENCE_PROMPT = """You are a forensic analysis assistant. Analyze this evidence item carefully and provide a detailed analysis.

Evidence type: {evidence_type}
Filename: {filename}
{content_block}
Provide:
1. summary: a detailed summary (3-4 sentences) describing what you observe.
   - For images and video frames: key objects, people, scenes, actions, spatial relationships, notable details
   - For text and audio: key statements, claims, facts, people mentioned, locations, times
   - For any type: anomalies or details that may matter for reconstructing events
2. tags: key tags (objects, people, locations, actions, themes)
3. time_hint: temporal information if it is apparent
4. reasoning: a brief explanation of your analysis

Analyze the actual content provided, not the filename."""

VISUAL_CONTENT_BLOCK = """
[VISUAL ANALYSIS REQUIRED]
Image data is attached. Describe what is actually visible.
"""

TEXT_CONTENT_BLOCK = """
[TEXT CONTENT ANALYSIS REQUIRED]

=== TEXT CONTENT FROM FILE ({char_count} characters) ===
{text}
=== END OF TEXT CONTENT ===

Extract key information, facts, statements, people, locations, times and events from the text above.
"""

NO_CONTENT_BLOCK = """
[WARNING: No file content available - only filename metadata]
Provide analysis based on filename and type only.
"""

TRANSCRIBE_AUDIO_PROMPT = """Transcribe this audio recording. Provide a complete, accurate transcript of all spoken words, including:
- All dialogue and speech
- Speaker identification if possible (e.g., "Speaker 1:", "Speaker 2:")
- Important sounds or background audio
- Any pauses or notable audio events

Provide the transcript in plain text, one line per speaker or segment."""

FUSE_EVIDENCE_PROMPT = """You are a forensic analysis assistant. Fuse this evidence into a unified world model and build a timeline of events.

Evidence summaries:
{summaries}

{problem_statement}

Create a timeline of events based on what can be inferred from the evidence. Even if information is limited, provide at least 2-3 timeline events.

For each timeline event provide:
- label: short event name (e.g., "Person enters room")
- description: what happened, 2-3 sentences
- start_time / end_time: relative time in seconds (0, 5, 10, ...)
- confidence: 0-1, how confident you are in this event
- supporting_evidence_ids: the evidence labels that support it ("Evidence 1", "Evidence 2", ...)

Also provide world_model: 2-3 paragraphs describing the scene, key objects, people and the overall situation,
and reasoning: 1-2 sentences on how the evidence was fused."""

DETECT_CONTRADICTIONS_PROMPT = """Analyze these testimonies and evidence for contradictions.

Timeline:
{timeline}

Evidence:
{evidence}

Witness statements:
{statements}

Identify contradictions between:
- Testimonies and the timeline
- Testimonies and physical evidence
- Different testimonies

For each contradiction provide a description, the involved evidence labels ("Evidence 1", ...),
the involved witnesses ("Witness 1", ...) and a severity of low, medium or high.
Add reasoning: 1-2 sentences."""

GENERATE_SCENARIOS_PROMPT = """You are a forensic analyst. Generate 2-3 plausible scenarios based on this evidence.

World model:
{world_model}

Timeline:
{timeline}

Contradictions:
{contradictions}

For each scenario provide:
- name (e.g., "Scenario A: Accidental Fall")
- likelihood: 0-1, an independent plausibility score for this scenario
- narrative: 2-3 paragraphs explaining what happened step by step
- scenario_reasoning: 1-2 sentences on why this scenario is plausible given the evidence
- key_findings: 3-5 specific findings that support this scenario
- supporting_evidence: 3-5 human-readable supporting points
- conflicting_evidence: 2-3 human-readable conflicting points
- supporting_evidence_ids / conflicting_evidence_ids: evidence labels ("Evidence 1", ...)

Add reasoning: 2-3 sentences explaining how the scenarios were derived."""

CHAT_PROMPT = """Case analysis:
{analysis}

Evidence:
{evidence}

User question: {question}

Respond as a forensic reasoning assistant. Provide a clear answer, brief reasoning (1-2 sentences)
explaining your thinking, and reference specific evidence when relevant. Do not identify real people
and do not make legal determinations."""
