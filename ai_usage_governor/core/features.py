"""
Feature helpers used by the meeting tool.

Each builds its prompt and goes through ``RequestOrchestrator.execute``,
so limits, budgets and the ledger apply exactly as for any other call.
"""

from .orchestrator import AIRequest, AIResponse, RequestOrchestrator


DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-3.5-turbo"


def generate_template(orchestrator: RequestOrchestrator, prompt: str, context: str) -> AIResponse:
    return orchestrator.execute(AIRequest(
        provider=DEFAULT_PROVIDER,
        model=DEFAULT_MODEL,
        messages=[
            {
                "role": "system",
                "content": "You are an expert meeting facilitator helping create "
                           "critical thinking-based meeting templates."
            },
            {"role": "user", "content": f"{prompt}\n\nContext: {context}"},
        ],
        feature="template_generation",
        temperature=0.7,
        max_tokens=2000
    ))


def analyze_template(
    orchestrator: RequestOrchestrator,
    title: str,
    question: str,
    context: str
) -> AIResponse:
    content = (
        "Analyze this meeting plan using critical thinking principles. "
        "Provide specific suggestions for improvement:\n\n"
        f"Title: {title}\n"
        f"Core Question: {question}\n"
        f"Context: {context}\n\n"
        "Please assess:\n"
        "1. Clarity - Is the purpose and question clear?\n"
        "2. Hidden assumptions - What assumptions might be problematic?\n"
        "3. Missing information - What key information might be needed?\n"
        "4. Perspectives - What viewpoints might be missing?\n\n"
        "Provide concise, actionable feedback."
    )
    return orchestrator.execute(AIRequest(
        provider=DEFAULT_PROVIDER,
        model=DEFAULT_MODEL,
        messages=[{"role": "user", "content": content}],
        feature="template_analysis",
        temperature=0.7,
        max_tokens=500
    ))


def provide_coaching(
    orchestrator: RequestOrchestrator,
    meeting_title: str,
    current_section: str,
    completed_items: int,
    total_items: int
) -> AIResponse:
    """Coaching tips for the section a meeting is currently in."""
    progress = round(completed_items / total_items * 100) if total_items else 0
    content = (
        "Provide coaching guidance for this meeting section:\n\n"
        f"Meeting: {meeting_title}\n"
        f"Current Section: {current_section}\n"
        f"Progress: {completed_items}/{total_items} items completed ({progress}%)\n\n"
        "Provide specific, actionable coaching tips for this section to help ensure "
        "effective critical thinking and productive discussion."
    )
    return orchestrator.execute(AIRequest(
        provider=DEFAULT_PROVIDER,
        model=DEFAULT_MODEL,
        messages=[
            {
                "role": "system",
                "content": "You are an AI meeting coach expert in critical thinking "
                           "and effective facilitation."
            },
            {"role": "user", "content": content},
        ],
        feature="ai_coaching",
        temperature=0.8,
        max_tokens=300
    ))
