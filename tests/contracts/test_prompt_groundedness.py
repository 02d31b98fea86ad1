from district_assistant.agent.generator import _SYSTEM_PROMPT
from district_assistant.obs.tracing import GroundednessEvaluator


def test_prompt_contains_groundedness_constraints() -> None:
    assert "Groundedness" in _SYSTEM_PROMPT
    assert "Cite every factual statement" in _SYSTEM_PROMPT
    assert "Never volunteer student information" in _SYSTEM_PROMPT


def test_groundedness_evaluator_high_for_cited_supported_answer() -> None:
    evaluator = GroundednessEvaluator(min_overlap=0.3)
    answer = "Parents must report an absence before 9 AM [attendance-handbook]."
    sources = ["Parents must report an absence before 9 AM by calling the school office."]

    assert evaluator.score(answer, sources) >= 0.95


def test_groundedness_evaluator_low_for_unsupported_answer() -> None:
    evaluator = GroundednessEvaluator(min_overlap=0.3)
    answer = "The cafeteria serves pizza every Friday."
    sources = ["Parents must report an absence before 9 AM by calling the school office."]

    assert evaluator.score(answer, sources) == 0.0
    assert evaluator.score("", sources) == 1.0
