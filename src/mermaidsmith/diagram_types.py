"""Supported Mermaid diagram categories."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DiagramType:
    name: str
    description: str
    keyword: str  # declaration the diagram source must start with


DEFAULT_TYPE = "flowchart"

DIAGRAM_TYPES: dict[str, DiagramType] = {
    t.name: t
    for t in [
        DiagramType("flowchart", "Process flows, workflows, and general flow diagrams", "flowchart"),
        DiagramType("sequenceDiagram", "Interactions between systems, API flows, and message sequences", "sequenceDiagram"),
        DiagramType("classDiagram", "Object-oriented structures, class relationships, and system architecture", "classDiagram"),
        DiagramType("stateDiagram", "State machines, transitions, and system states", "stateDiagram-v2"),
        DiagramType("erDiagram", "Database schemas, entity relationships, and data models", "erDiagram"),
        DiagramType("journey", "User journeys, experiences, and interaction flows", "journey"),
        DiagramType("gantt", "Project timelines, schedules, and task dependencies", "gantt"),
        DiagramType("pie", "Statistical distributions and proportional data", "pie"),
        DiagramType("quadrant", "2x2 matrices, SWOT analysis, and strategic planning", "quadrantChart"),
        DiagramType("requirementDiagram", "System requirements, dependencies, and specifications", "requirementDiagram"),
        DiagramType("gitgraph", "Git workflows, branching strategies, and version control", "gitGraph"),
        DiagramType("c4", "System context, containers, components, and code architecture", "C4Context"),
        DiagramType("mindmap", "Hierarchical structures, brainstorming, and concept maps", "mindmap"),
        DiagramType("timeline", "Chronological events, historical data, and time-based flows", "timeline"),
        DiagramType("zenuml", "UML sequence diagrams with a more natural syntax", "zenuml"),
        DiagramType("sankey", "Flow quantities, data transfers, and resource distributions", "sankey-beta"),
        DiagramType("xy", "Scatter plots, line graphs, and data correlations", "xychart-beta"),
        DiagramType("block", "System components, architecture diagrams, and module relationships", "block-beta"),
        DiagramType("packet", "Network packets, protocol flows, and data transmission", "packet-beta"),
        DiagramType("kanban", "Project management, task organization, and workflow status", "kanban"),
        DiagramType("architecture", "System architecture, component relationships, and infrastructure", "architecture-beta"),
    ]
}

# Every first-line keyword Mermaid accepts, including aliases the model tends to emit
DECLARATION_KEYWORDS: tuple[str, ...] = (
    "graph", "flowchart", "sequenceDiagram", "classDiagram", "stateDiagram-v2",
    "stateDiagram", "erDiagram", "journey", "gantt", "pie", "quadrantChart",
    "requirementDiagram", "gitGraph", "C4Context", "C4Container", "C4Component",
    "C4Dynamic", "C4Deployment", "mindmap", "timeline", "zenuml", "sankey-beta",
    "xychart-beta", "block-beta", "packet-beta", "kanban", "architecture-beta",
)


def is_known_type(name: str) -> bool:
    return name in DIAGRAM_TYPES


def describe_types() -> str:
    """Bulleted list of categories for the category-selection prompt."""
    return "\n".join(f"- {t.name}: {t.description}" for t in DIAGRAM_TYPES.values())
