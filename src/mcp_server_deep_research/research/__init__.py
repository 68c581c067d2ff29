"""Recursive deep research: sub-query fan-out, learning extraction and report synthesis."""

from .feedback import generate_feedback
from .machine import ResearchMachine, deep_research, research
from .models import ResearchReport, ResearchResult, ResearchTask, SubQuery
from .report import synthesize_report, write_final_report

__all__ = [
    "ResearchMachine",
    "ResearchReport",
    "ResearchResult",
    "ResearchTask",
    "SubQuery",
    "deep_research",
    "generate_feedback",
    "research",
    "synthesize_report",
    "write_final_report",
]
