"""
Keyword-matching analyzer.

A deterministic placeholder for a real language model: topics, action items
and canned replies are chosen by substring rules. Used by default on the
server and in tests.
"""
from __future__ import annotations

from typing import List, Sequence, Tuple

from convo_assist.analysis.base import AnalysisBackend, History, history_texts
from convo_assist.models.data_models import AnalysisResult, TopicDetection

# (keywords, detections) pairs checked against the lower-cased transcript
TOPIC_RULES: Sequence[Tuple[Tuple[str, ...], Tuple[TopicDetection, ...]]] = (
    (("microservice", "service"), (TopicDetection("Microservices", 5),)),
    (("kubernetes", "container", "docker"), (TopicDetection("Kubernetes", 5), TopicDetection("Docker", 4))),
    (("react", "frontend", "ui"), (TopicDetection("React", 3),)),
    (("node", "backend", "server"), (TopicDetection("Node.js", 3),)),
    (("aws", "cloud"), (TopicDetection("AWS", 3),)),
    (("lead", "team", "manage"), (TopicDetection("Team Leadership", 3),)),
)

ACTION_ITEM_RULES: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("document", "documentation", "share"), "Share migration case study documentation"),
)

SUGGESTED_QUESTIONS = (
    "Could you elaborate on the technical challenges you faced?",
    "How did you measure the success of this project?",
    "What would you do differently next time?",
)

TECHNICAL_SUMMARY = (
    "Job interview for a senior developer position. The candidate has 5+ years of full-stack "
    "development experience with React and Node.js, and currently leads a team at TechSolutions. "
    "They have 3 years of experience with containerization (Docker, Kubernetes) and have led a "
    "migration from monolithic to microservices architecture. The interviewer is probing for "
    "specific examples of challenges faced during the migration."
)

DEFAULT_SUGGESTION = "I don't have a specific suggestion for that question."

CHALLENGE_SUGGESTION = (
    "The biggest challenge during our microservices migration was maintaining system stability "
    "while incrementally transitioning services. We approached this by:\n\n"
    "• Creating a detailed dependency map to identify transition order\n"
    "• Implementing an API gateway pattern for routing\n"
    "• Using feature flags to control traffic between old and new services\n"
    "• Establishing comprehensive monitoring and alerting\n\n"
    "This approach reduced downtime and allowed us to roll back quickly when issues arose."
)

EXPERIENCE_SUGGESTION = (
    "My experience includes leading a team of 5 developers on a major microservices migration "
    "project. We successfully decomposed a monolithic application into 12 independent services, "
    "resulting in:\n\n"
    "• 40% improvement in deployment frequency\n"
    "• 60% reduction in mean time to recovery\n"
    "• Significant enhancement in our ability to scale individual components\n\n"
    "I've worked extensively with Docker, Kubernetes, and AWS ECS for orchestration."
)

ASSIST_RULES: Sequence[Tuple[str, str]] = (
    (
        "help",
        "Try to provide specific examples from your experience that demonstrate the skills "
        "mentioned in the job description.",
    ),
    (
        "question",
        "When faced with a challenging question, take a moment to pause and structure your "
        "thoughts. Use the STAR method: Situation, Task, Action, Result.",
    ),
    (
        "technical",
        "For technical questions, demonstrate your depth of knowledge by explaining not just what "
        "you did, but why certain technical decisions were made and their trade-offs.",
    ),
)

DEFAULT_ASSIST = "I'll need more context to help you with that."


class KeywordAnalyzer(AnalysisBackend):
    """Substring-rule analyzer; never fails."""

    async def summarize(self, history: History) -> str:
        texts = history_texts(history)
        if not texts:
            return ""
        if len(texts) <= 2:
            return "Conversation started. Awaiting more dialogue to generate summary."
        joined = " ".join(texts)
        if any(word in joined for word in ("microservice", "kubernetes", "docker")):
            return TECHNICAL_SUMMARY
        return (
            f"Conversation with {len(texts)} exchanges. Multiple topics discussed including "
            "development, infrastructure, and project experience."
        )

    async def analyze(self, history: History) -> AnalysisResult:
        text = " ".join(history_texts(history)).lower()
        topics: List[TopicDetection] = []
        for keywords, detections in TOPIC_RULES:
            if any(word in text for word in keywords):
                topics.extend(detections)
        action_items = [item for keywords, item in ACTION_ITEM_RULES if any(word in text for word in keywords)]
        return AnalysisResult(
            topics=topics,
            action_items=action_items,
            suggested_questions=list(SUGGESTED_QUESTIONS),
        )

    async def suggest_response(self, history: History, last_message: str) -> str:
        lowered = (last_message or "").lower()
        if "challenge" in lowered:
            return CHALLENGE_SUGGESTION
        if "experience" in lowered:
            return EXPERIENCE_SUGGESTION
        return DEFAULT_SUGGESTION

    async def assist(self, history: History, prompt: str) -> str:
        lowered = (prompt or "").lower()
        for keyword, reply in ASSIST_RULES:
            if keyword in lowered:
                return reply
        return DEFAULT_ASSIST
