"""
answer_scoring.py - Server-side scoring of test attempts

Provides:
- normalize_answer(answer) - canonical form used for comparison
- answers_match(user_answer, correct_answer) - tolerant equality
- score_questions(questions) - fills missing correctness flags and counts the score

The stored score is always derived here from the question list; a score
sent by the client is never trusted.
"""

import re
from typing import List, Tuple

from tutorlab.models.telemetry import NO_ANSWER, TestQuestion


def normalize_answer(answer: str) -> str:
    """Normalize an answer for comparison."""
    if not answer:
        return ""
    return answer.strip().lower()


def _normalize_punctuation(text: str) -> str:
    """Remove trailing punctuation and collapse whitespace."""
    text = re.sub(r'[.,!?;:]+$', '', text)
    text = re.sub(r'\s+', ' ', text).strip()
    return text


def _as_number(text: str):
    try:
        return float(text.replace(",", "").replace(" ", ""))
    except ValueError:
        return None


def answers_match(user_answer: str, correct_answer: str) -> bool:
    if not correct_answer or user_answer == NO_ANSWER:
        return False

    user_norm = normalize_answer(user_answer)
    correct_norm = normalize_answer(correct_answer)
    if user_norm == correct_norm:
        return True

    user_clean = _normalize_punctuation(user_norm)
    correct_clean = _normalize_punctuation(correct_norm)
    if user_clean == correct_clean:
        return True

    # Numeric answers: "12", "12.0" and "12 " are the same answer
    user_num = _as_number(user_clean)
    correct_num = _as_number(correct_clean)
    if user_num is not None and correct_num is not None:
        return abs(user_num - correct_num) < 1e-9

    return False


def score_questions(questions: List[TestQuestion]) -> Tuple[List[TestQuestion], int]:
    """
    Resolve correctness for every question and count the correct ones.

    Questions that arrive without is_correct are graded by comparing the
    user's answer to the correct answer.
    """
    scored = []
    for q in questions:
        if q.is_correct is None:
            q = q.model_copy(update={"is_correct": answers_match(q.user_answer, q.correct_answer)})
        scored.append(q)
    score = sum(1 for q in scored if q.is_correct)
    return scored, score
