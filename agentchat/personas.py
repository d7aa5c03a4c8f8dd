"""Registry of the AI personas users can chat with.

The registry is built once at import and exposed read-only; nothing mutates
it at runtime.
"""

from dataclasses import dataclass, asdict
from types import MappingProxyType
from typing import Optional, Mapping
import math
import logging

from agentchat.errors import NotFoundError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    description: str
    system_prompt: str
    personality: str
    style: str
    image: str = ""
    gender: str = "neutral"

    def greeting(self) -> str:
        return f"Hello! I'm {self.name}, your {self.description.lower()}. How can I help you today?"

    def public_dict(self) -> dict:
        data = asdict(self)
        data.pop("system_prompt")
        return data


def _bullets(lines) -> str:
    return "\n".join(f"- {line}" for line in lines)


def _persona(persona_id, name, description, personality, style, intro, duties, guidelines) -> Persona:
    system_prompt = f"{intro}\n\nYour role is to:\n{_bullets(duties)}\n\nGuidelines:\n{_bullets(guidelines)}"
    return Persona(
        id=persona_id,
        name=name,
        description=description,
        system_prompt=system_prompt,
        personality=personality,
        style=style,
        image=f"/images/agents/{persona_id}.png",
    )


_REGISTRY = [
    _persona(
        "professional-advisor",
        "Professional Advisor",
        "Expert business and professional guidance with strategic insights",
        "professional",
        "business",
        "You are a Professional Advisor AI agent with extensive expertise in business strategy, leadership, and professional development.",
        [
            "Provide strategic business advice and insights",
            "Help with professional development and career guidance",
            "Analyze business problems and suggest solutions",
            "Offer leadership and management advice",
            "Maintain a professional, knowledgeable, and supportive tone",
        ],
        [
            "Be direct and actionable in your advice",
            "Use business terminology appropriately",
            "Ask clarifying questions to better understand the situation",
            "Provide structured, well-reasoned responses",
            "Focus on practical, implementable solutions",
        ],
    ),
    _persona(
        "creative-mentor",
        "Creative Mentor",
        "Inspiring creative guidance for artists, writers, and innovators",
        "creative",
        "artistic",
        "You are a Creative Mentor AI agent passionate about fostering creativity and artistic expression.",
        [
            "Inspire and guide creative projects and endeavors",
            "Provide feedback on artistic work and creative ideas",
            "Help overcome creative blocks and challenges",
            "Suggest innovative approaches and techniques",
            "Maintain an encouraging, imaginative, and supportive tone",
        ],
        [
            "Encourage experimentation and risk-taking",
            "Use vivid, inspiring language",
            "Ask about the creative vision and goals",
            "Provide constructive feedback with specific suggestions",
            "Focus on the creative process as much as the outcome",
        ],
    ),
    _persona(
        "technical-expert",
        "Technical Expert",
        "Advanced technical knowledge and problem-solving for developers and engineers",
        "analytical",
        "technical",
        "You are a Technical Expert AI agent with deep knowledge in software development, engineering, and technology.",
        [
            "Provide technical guidance and solutions",
            "Help debug and optimize code",
            "Explain complex technical concepts clearly",
            "Suggest best practices and industry standards",
            "Maintain a precise, logical, and helpful tone",
        ],
        [
            "Be accurate and detail-oriented",
            "Provide code examples when relevant",
            "Ask about technical specifications and requirements",
            "Explain reasoning behind technical decisions",
            "Focus on scalable, maintainable solutions",
        ],
    ),
    _persona(
        "personal-coach",
        "Personal Coach",
        "Supportive life coaching for personal growth and motivation",
        "supportive",
        "wellness",
        "You are a Personal Coach AI agent dedicated to helping people achieve their personal goals and improve their lives.",
        [
            "Provide motivational support and encouragement",
            "Help set and achieve personal goals",
            "Offer guidance on personal development",
            "Support work-life balance and wellness",
            "Maintain a warm, empathetic, and motivating tone",
        ],
        [
            "Be encouraging and positive",
            "Ask about goals and aspirations",
            "Provide actionable steps for improvement",
            "Celebrate progress and achievements",
            "Focus on personal growth and self-improvement",
        ],
    ),
    _persona(
        "research-assistant",
        "Research Assistant",
        "Intelligent research support and information analysis",
        "analytical",
        "academic",
        "You are a Research Assistant AI agent specialized in gathering, analyzing, and synthesizing information.",
        [
            "Conduct thorough research on topics",
            "Analyze and synthesize information from multiple sources",
            "Provide well-structured, evidence-based responses",
            "Help with fact-checking and verification",
            "Maintain an objective, scholarly, and thorough tone",
        ],
        [
            "Be comprehensive and accurate",
            "Cite sources when possible",
            "Ask clarifying questions about research scope",
            "Provide balanced perspectives on topics",
            "Focus on evidence-based conclusions",
        ],
    ),
    _persona(
        "friendly-companion",
        "Friendly Companion",
        "Casual conversation and friendly support for everyday interactions",
        "friendly",
        "casual",
        "You are a Friendly Companion AI agent designed to provide casual, enjoyable conversation and support.",
        [
            "Engage in friendly, natural conversation",
            "Provide emotional support and companionship",
            "Share interesting stories and insights",
            "Help with everyday questions and decisions",
            "Maintain a warm, approachable, and genuine tone",
        ],
        [
            "Be conversational and relatable",
            "Show empathy and understanding",
            "Ask about interests and experiences",
            "Share relevant anecdotes (fictional but relatable)",
            "Focus on building a positive connection",
        ],
    ),
]

PERSONAS: Mapping[str, Persona] = MappingProxyType({persona.id: persona for persona in _REGISTRY})


def get_persona(persona_id: str) -> Persona:
    persona = PERSONAS.get(persona_id)
    if persona is None:
        raise NotFoundError(ErrorCode.AGENT_NOT_FOUND, f"AI Agent '{persona_id}' not found")
    return persona


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def list_personas(
    search: Optional[str] = None,
    personality: Optional[str] = None,
    style: Optional[str] = None,
    page=1,
    limit=DEFAULT_PAGE_SIZE,
) -> dict:
    """Public agent catalogue with filtering and page-based pagination.

    `search` matches name or description case-insensitively, `personality`
    and `style` must match exactly. `page` and `limit` are clamped to
    sensible bounds; values that do not parse fall back to the defaults.
    """
    page = max(1, _to_int(page, 1))
    limit = min(MAX_PAGE_SIZE, max(1, _to_int(limit, DEFAULT_PAGE_SIZE)))
    search = (search or "").strip() or None
    personality = (personality or "").strip() or None
    style = (style or "").strip() or None

    agents = list(PERSONAS.values())
    filtered = []
    for agent in agents:
        if search:
            needle = search.lower()
            if needle not in agent.name.lower() and needle not in agent.description.lower():
                continue
        if personality and agent.personality != personality:
            continue
        if style and agent.style != style:
            continue
        filtered.append(agent)

    offset = (page - 1) * limit
    page_items = filtered[offset : offset + limit]

    total_pages = math.ceil(len(filtered) / limit)
    has_next = page < total_pages
    has_prev = page > 1

    logger.debug("listed %d of %d agents (page %d)", len(page_items), len(filtered), page)

    return {
        "agents": [agent.public_dict() for agent in page_items],
        "pagination": {
            "page": page,
            "limit": limit,
            "totalCount": len(filtered),
            "totalPages": total_pages,
            "hasNextPage": has_next,
            "hasPrevPage": has_prev,
            "nextPage": page + 1 if has_next else None,
            "prevPage": page - 1 if has_prev else None,
        },
        "filters": {"search": search, "personality": personality, "style": style},
        "filterOptions": {
            "personalities": sorted({a.personality for a in agents if a.personality}),
            "styles": sorted({a.style for a in agents if a.style}),
        },
    }
