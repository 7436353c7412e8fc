"""Quiz capability collaborator.

Progress never grades anything itself.  It only asks two questions of
whoever owns quizzes: does this lesson have a gradable quiz, and does
that quiz demand a passing mark.  Quiz progress also needs the lesson
a quiz belongs to.

StaticQuizCatalog answers from a JSON file (QUIZ_CATALOG_PATH):

    {
      "lessons": {
        "12": {"quiz_id": 91, "has_questions": true, "pass_required": true},
        "13": {"quiz_id": 92, "has_questions": false}
      }
    }
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class QuizCapability(Protocol):
    def lesson_has_gradable_quiz(self, lesson_id: int) -> bool: ...
    def quiz_requires_pass(self, lesson_id: int) -> bool: ...
    def lesson_for_quiz(self, quiz_id: int) -> int | None: ...


class LessonQuiz(BaseModel):
    quiz_id: int
    has_questions: bool = False
    pass_required: bool = False


class QuizCatalogFile(BaseModel):
    lessons: dict[int, LessonQuiz] = {}


class StaticQuizCatalog:
    """QuizCapability backed by a fixed lesson -> quiz mapping.

    A lesson with no quiz cannot be failed through, so
    quiz_requires_pass() is True for it.
    """

    def __init__(self, lessons: Mapping[int, LessonQuiz] | None = None) -> None:
        self._lessons = dict(lessons or {})
        self._lesson_by_quiz = {q.quiz_id: lid for lid, q in self._lessons.items()}

    def lesson_has_gradable_quiz(self, lesson_id: int) -> bool:
        quiz = self._lessons.get(lesson_id)
        return quiz is not None and quiz.has_questions

    def quiz_requires_pass(self, lesson_id: int) -> bool:
        quiz = self._lessons.get(lesson_id)
        if quiz is None:
            return True
        return quiz.pass_required

    def lesson_for_quiz(self, quiz_id: int) -> int | None:
        return self._lesson_by_quiz.get(quiz_id)


def load_quiz_catalog(path: str | None) -> StaticQuizCatalog:
    if not path:
        logger.info("No QUIZ_CATALOG_PATH configured; no lesson has a quiz")
        return StaticQuizCatalog()
    catalog = QuizCatalogFile.model_validate_json(Path(path).read_text())
    logger.info("Loaded quiz catalog: %d lessons from %s", len(catalog.lessons), path)
    return StaticQuizCatalog(catalog.lessons)
