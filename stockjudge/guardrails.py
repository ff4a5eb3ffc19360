"""
Deterministic output gates for the chat answer.

Cheap regex checks run before any verifier LLM call and again on the final
text; a draft that trips any of them is never shown to the user.
"""

from __future__ import annotations
import re
from typing import List

# digits, percentages, currency symbols and unit words
_NUMBERS = re.compile(r"(\d+([.,]\d+)?|%|\$|usd|krw|원|달러|엔|€|£)", re.IGNORECASE)

# buy/sell/recommend/target price/stop-loss/returns style wording
_FINANCE_ADVICE = re.compile(
    r"(매수|매도|추천|사라|팔아|롱|숏|목표가|손절|익절|수익률|수익|손실|투자\s*조언|포지션|진입|청산)",
    re.IGNORECASE,
)

# the product never calls its output an "analysis" or a "report"
_ANALYSIS_WORD = re.compile(r"(분석|리포트|리서치\s*리포트)", re.IGNORECASE)


def has_numbers(text: str) -> bool:
    return bool(_NUMBERS.search(text or ""))


def has_disallowed_finance_advice(text: str) -> bool:
    return bool(_FINANCE_ADVICE.search(text or ""))


def has_disallowed_analysis_word(text: str) -> bool:
    return bool(_ANALYSIS_WORD.search(text or ""))


def local_gate_issues(text: str) -> List[str]:
    issues = []
    if has_numbers(text):
        issues.append("numbers")
    if has_disallowed_finance_advice(text):
        issues.append("finance_advice")
    if has_disallowed_analysis_word(text):
        issues.append("analysis_word")
    return issues

