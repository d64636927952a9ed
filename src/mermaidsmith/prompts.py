"""Prompt templates and the rotating generation strategies."""

from __future__ import annotations

from dataclasses import dataclass

from mermaidsmith.diagram_types import DIAGRAM_TYPES, DEFAULT_TYPE, describe_types

VALIDATION_PROMPT = """\
Analyze this text and determine whether a diagram can be generated from it. \
Anything nonsensical or too vague to visualize is invalid.

Text to analyze: "{text}"

Return your response in this exact format (including the json code block):
```json
{{
  "isValid": boolean,
  "understanding": "detailed explanation of what you understand from the text, or null if invalid",
  "error": "explanation of why the text is insufficient (if invalid), or null if valid"
}}
```"""

CATEGORY_PROMPT = """\
Based on this understanding of the text, determine the most suitable Mermaid diagram type.

Original text: "{text}"

Text understanding:
{understanding}

Available diagram types and their use cases:
{types}

Consider:
1. The type of information being represented
2. The relationships between elements
3. The temporal or structural nature of the data
4. The visualization goals
5. The complexity of the information

Return your response in this exact format (including the json code block):
```json
{{
  "type": "selected_diagram_type",
  "reasoning": "brief explanation why this type is best suited for this visualization",
  "enhancedText": "refined and structured version of the original text based on the understanding"
}}
```"""

TITLE_PROMPT = """\
Generate a short, concise, and descriptive title (maximum 50 characters) for a \
{diagram_type} diagram based on this text. The title should capture the main \
concept or purpose of the diagram.

Text to generate title for: "{text}"

Rules:
1. Maximum 50 characters
2. Be descriptive but concise
3. Focus on the main concept
4. No quotes or special characters
5. Return only the title, nothing else"""

GENERATION_SYSTEM_PROMPT = (
    "You are an expert in Mermaid.js diagram generation. "
    "You return only Mermaid diagram source code: no markdown, no explanations."
)

SIMPLE_GUIDELINES = """\
1. Structure:
   - Keep layout simple and linear
   - Minimize crossing lines
   - Use basic top-to-bottom flow
2. Relationships:
   - Use basic arrows
   - Keep labels short and clear
   - Direct connections only"""

COMPLEX_GUIDELINES = """\
1. Structure:
   - Use clear hierarchical organization
   - Group related elements using subgraphs or sections where the diagram type supports them
   - Maintain a consistent direction
2. Relationships:
   - Use precise arrow types for relationships
   - Include relationship labels where meaningful
   - Ensure proper connection syntax
3. Detail:
   - Cover every significant step or entity in the text
   - Add descriptive titles and labels"""

CRITICAL_REQUIREMENTS = """\
Critical requirements:
1. Start with the "{keyword}" declaration
2. Follow exact Mermaid.js syntax
3. Ensure all nodes are declared before use
4. Use proper arrow syntax
5. Maintain consistent indentation
6. No styling directives (style, classDef, linkStyle), no markdown, no extra text

Return only the Mermaid diagram code, no explanations."""


@dataclass(frozen=True)
class PromptStrategy:
    """One way of wording the generation instructions."""

    name: str
    instructions: str


STRATEGIES: tuple[PromptStrategy, ...] = (
    PromptStrategy(
        name="plain",
        instructions=(
            "Create a {complexity} {diagram_type} diagram that visualizes the input text. "
            "Follow the guidelines below exactly."
        ),
    ),
    PromptStrategy(
        name="hierarchical",
        instructions=(
            "Break the input text down hierarchically before drawing anything: first list the "
            "top-level concepts, then the parts of each, then how the parts connect. Then express "
            "that breakdown as a {complexity} {diagram_type} diagram."
        ),
    ),
    PromptStrategy(
        name="systematic",
        instructions=(
            "Work systematically. Step 1: identify every entity or step in the input text. "
            "Step 2: identify every relationship between them. Step 3: declare all nodes. "
            "Step 4: add the relationships one by one. Step 5: check every line against Mermaid "
            "syntax. Produce a {complexity} {diagram_type} diagram."
        ),
    ),
    PromptStrategy(
        name="fresh-perspective",
        instructions=(
            "Earlier attempts at this diagram were not valid Mermaid. Ignore them and approach the "
            "input text from a fresh perspective, using the simplest correct syntax for a "
            "{complexity} {diagram_type} diagram. Prefer fewer, well-formed lines over ambitious ones."
        ),
    ),
)


def strategy_for_attempt(attempt: int) -> PromptStrategy:
    return STRATEGIES[attempt % len(STRATEGIES)]


def format_history(history: list[dict]) -> str:
    """Render an oldest-first ancestor chain as numbered versions."""
    blocks = []
    for i, entry in enumerate(history, 1):
        label = "original" if i == 1 else f"revision {i - 1}"
        blocks.append(
            f"Version {i} ({label}):\n"
            f"Request: {entry['prompt']}\n"
            f"Diagram:\n{entry['code']}"
        )
    return "\n\n".join(blocks)


def build_generation_prompt(
    text: str,
    diagram_type: str,
    strategy: PromptStrategy,
    is_complex: bool = False,
    previous_error: str | None = None,
    history: list[dict] | None = None,
    change_description: str | None = None,
) -> str:
    """Assemble the generation prompt for one attempt."""
    dtype = DIAGRAM_TYPES.get(diagram_type) or DIAGRAM_TYPES[DEFAULT_TYPE]
    complexity = "comprehensive" if is_complex else "simple"
    sections = [strategy.instructions.format(complexity=complexity, diagram_type=dtype.name)]

    if history:
        sections.append(
            "You are editing an existing diagram. Earlier versions, oldest first:\n\n"
            + format_history(history)
            + "\n\nModify the LATEST version according to the new request below. Keep everything "
            "the request does not ask to change."
        )
        sections.append(f"New request:\n{text}")
        if change_description:
            sections.append(f"Requested change:\n{change_description}")
    else:
        sections.append(f"Input text to visualize:\n{text}")

    sections.append(f"Diagram type: {dtype.name} ({dtype.description})")
    sections.append(
        "Complexity guidelines:\n" + (COMPLEX_GUIDELINES if is_complex else SIMPLE_GUIDELINES)
    )
    if previous_error:
        sections.append(
            f"The previous attempt failed: {previous_error}\n"
            "Common causes: incorrect node declarations, invalid relationship definitions, "
            "unclosed blocks."
        )
    sections.append(CRITICAL_REQUIREMENTS.format(keyword=dtype.keyword))
    return "\n\n".join(sections)


def build_validation_prompt(text: str) -> str:
    return VALIDATION_PROMPT.format(text=text)


def build_category_prompt(text: str, understanding: str) -> str:
    return CATEGORY_PROMPT.format(text=text, understanding=understanding, types=describe_types())


def build_title_prompt(text: str, diagram_type: str) -> str:
    return TITLE_PROMPT.format(text=text, diagram_type=diagram_type)
