from __future__ import annotations

import math
import pathlib
from typing import List, Optional, Tuple, Union

from loguru import logger

from .data_models import QuestionAnswer


def parse_tsv(text: str) -> List[QuestionAnswer]:
    """
    Parse ``question<TAB>answer`` lines.

    Blank lines are ignored. Lines with fewer than two columns or whose answer
    is not a finite number are skipped with a warning.
    """
    results: List[QuestionAnswer] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        columns = line.split("\t")
        if len(columns) < 2:
            logger.bind(line=lineno).warning("Skipping line without enough columns")
            continue
        question = columns[0].strip()
        try:
            gold = float(columns[1].strip())
        except ValueError:
            logger.bind(line=lineno).warning("Skipping line with non-numeric answer")
            continue
        if math.isnan(gold) or math.isinf(gold):
            logger.bind(line=lineno).warning("Skipping line with non-finite answer")
            continue
        results.append(QuestionAnswer(question=question, gold_answer=gold))
    return results


def load_questions(path: Union[str, pathlib.Path]) -> List[QuestionAnswer]:
    path = pathlib.Path(path)
    questions = parse_tsv(path.read_text(encoding="utf-8"))
    logger.bind(path=str(path), count=len(questions)).info("Loaded benchmark")
    return questions


class BenchmarkSource:
    """Loads a benchmark once and serves the same immutable tuple afterwards."""

    def __init__(self, path: Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)
        self._questions: Optional[Tuple[QuestionAnswer, ...]] = None

    def load_questions(self) -> Tuple[QuestionAnswer, ...]:
        if self._questions is None:
            self._questions = tuple(load_questions(self.path))
        return self._questions
