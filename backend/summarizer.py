"""
backend/summarizer.py
Clinical-note summarizer behind the "Edge AI Summarizer" panel.

  ExtractiveSummarizer — offline keyword-density summary, no model needed
  LlmSummarizer        — Groq (Llama 3) → OpenAI → Gemini, falls back to extractive
  CannedSummarizer     — fixed text, for tests and demos
"""

import os
import re
import logging

logger = logging.getLogger("jeevan.summarizer")

MEDICAL_TERMS = {
    "diagnosis", "patient", "treatment", "medication", "prescribed", "findings",
    "abnormal", "normal", "result", "test", "blood", "pressure", "heart",
    "rate", "level", "elevated", "low", "high", "recommended", "follow",
    "report", "history", "symptom", "condition", "examination", "lab",
    "mg", "mmhg", "bpm", "procedure", "scan", "x-ray", "mri", "ct", "ecg",
    "ekg", "glucose", "cholesterol", "hemoglobin", "creatinine", "thyroid",
    "diabetes", "hypertension", "infection", "inflammation", "chronic", "acute",
    "severe", "mild", "plan", "rule", "order", "stat", "monitoring", "cough",
    "pain", "fever", "tachycardia", "asthma", "vital", "signs",
}

PROMPT = """You are a clinical documentation assistant.
Summarize the following clinical note for a treating physician in 3-4 sentences.
Keep presenting complaint, key findings, relevant history and the plan.
Do not add facts that are not in the note.

NOTE:
{text}"""


class ExtractiveSummarizer:
    """Scores sentences by medical term density and keeps the top N in order."""

    engine = "extractive"

    def __init__(self, max_sentences: int = 3):
        self.max_sentences = max_sentences

    def summarize(self, text: str) -> str:
        raw_sentences = re.split(r'(?<=[.!?])\s+', (text or "").strip())
        sentences = [s.strip() for s in raw_sentences if len(s.strip()) > 20]
        if not sentences:
            return (text or "").strip()

        def score(s: str) -> float:
            words = re.findall(r'\b[\w-]+\b', s.lower())
            if not words:
                return 0.0
            return sum(1 for w in words if w in MEDICAL_TERMS) / len(words)

        scored = sorted(enumerate(sentences), key=lambda x: score(x[1]), reverse=True)
        top_indices = sorted(i for i, _ in scored[:self.max_sentences])
        return " ".join(sentences[i] for i in top_indices)


class CannedSummarizer:
    engine = "canned"

    def __init__(self, summary: str = "Summary unavailable."):
        self.summary = summary

    def summarize(self, text: str) -> str:
        return self.summary


class LlmSummarizer:
    """Hosted-model summary with the same tier order as the report pipeline."""

    engine = "llm"

    def __init__(self, fallback=None):
        self.fallback = fallback or ExtractiveSummarizer()
        self.last_engine = None

    def _groq(self, prompt: str):
        key = os.environ.get("GROQ_API_KEY")
        if not key:
            return None
        from groq import Groq
        completion = Groq(api_key=key).chat.completions.create(
            model="llama-3.3-70b-versatile",
            messages=[{"role": "user", "content": prompt}],
            temperature=0.2,
        )
        return completion.choices[0].message.content

    def _openai(self, prompt: str):
        key = os.environ.get("OPENAI_API_KEY")
        if not key:
            return None
        from openai import OpenAI
        response = OpenAI(api_key=key).chat.completions.create(
            model="gpt-4o-mini",
            messages=[{"role": "user", "content": prompt}],
            max_tokens=300,
        )
        return response.choices[0].message.content

    def _gemini(self, prompt: str):
        key = os.environ.get("GOOGLE_API_KEY")
        if not key:
            return None
        import google.generativeai as genai
        genai.configure(api_key=key)
        return genai.GenerativeModel("gemini-1.5-flash").generate_content(prompt).text

    def summarize(self, text: str) -> str:
        prompt = PROMPT.format(text=(text or "")[:4000])
        for name, tier in (("groq", self._groq), ("openai", self._openai), ("gemini", self._gemini)):
            try:
                result = tier(prompt)
            except Exception as e:
                logger.warning(f"{name} summarizer error: {str(e)[:100]}")
                continue
            if result and result.strip():
                self.last_engine = name
                return result.strip()

        logger.info("No hosted model answered, using local extraction.")
        self.last_engine = self.fallback.engine
        return self.fallback.summarize(text)


def build_summarizer():
    if any(os.environ.get(k) for k in ("GROQ_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY")):
        return LlmSummarizer()
    return ExtractiveSummarizer()
