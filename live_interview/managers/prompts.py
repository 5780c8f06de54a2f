import re
from typing import Iterable

KICKOFF_PROMPT = "Please start the interview with a professional greeting."
NEXT_RESPONSE_PROMPT = "I have finished speaking. Please continue with your feedback and next question."

_NUMBERING = re.compile(r"^\d+[.)]\s*")


def format_question(question: str) -> str:
    """Strip leading numbering, capitalize and make sure the question ends with '?'."""
    formatted = _NUMBERING.sub("", question.strip()).strip()
    if not formatted.endswith("?"):
        formatted += "?"
    return formatted[:1].upper() + formatted[1:]


def _enumerate(prefix: str, questions: Iterable[str]) -> str:
    lines = []
    for i, question in enumerate(questions, start=1):
        escaped = question.replace('"', '\\"')
        lines.append(f'{prefix}{i}: "{escaped}"')
    return "\n".join(lines)


def build_system_instruction(config) -> str:
    """Render the interviewer persona and question bank for a session."""
    resume_line = f"- Candidate's Resume: {config.resume_text}\n" if config.resume_text else ""
    return f"""You are a professional interviewer conducting a mock interview for a {config.job_title} position at {config.company}.

INTERVIEW CONTEXT:
- Job Title: {config.job_title}
- Company: {config.company}
- Job Description: {config.job_description}
{resume_line}
AVAILABLE QUESTIONS:
Technical Questions:
{_enumerate("T", config.technical_questions)}

Behavioral Questions:
{_enumerate("B", config.behavioral_questions)}

INTERVIEW GUIDELINES:
1. Start with a warm greeting and a short introduction to the role
2. Ask ONE question at a time and never combine questions in one response
3. Use the provided questions as a base and ask natural follow-ups where useful
4. Give brief, constructive feedback after each answer
5. Keep responses concise and conversational (30-60 seconds each)
6. Close by asking whether the candidate has questions about the role

CONVERSATION STYLE:
- Speak naturally, as in a real phone interview
- Wait for the candidate's answer before moving on
- Always continue the conversation after the candidate speaks
- Finish every sentence and question completely

Begin the interview now with a professional greeting."""
