"""Utilities for loading the module catalogue and quiz definitions from disk."""

from __future__ import annotations

import json
import os
import random
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

QUIZ_CONTENT_DIR = Path(
    os.getenv("QUIZ_CONTENT_DIR") or (Path(__file__).resolve().parent / "quizzes")
)
MODULES_INDEX_PATH = QUIZ_CONTENT_DIR / "modules.json"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[quizzes] failed to load '{path}': {exc}")
        return None


def _order_key(value: Any):
    try:
        return (0, int(value), "")
    except Exception:
        return (1, 0, str(value))


def _sorted_modules(modules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _sort_key(mod: Dict[str, Any]):
        order = mod.get("sort_order", mod.get("order"))
        try:
            order_val = int(order)
        except Exception:
            order_val = float("inf")
        return (order_val, (mod.get("display_name") or mod.get("name") or "").lower())

    return sorted([dict(m) for m in modules if isinstance(m, dict) and m.get("name")], key=_sort_key)


def is_safe_name(value: Any) -> bool:
    return isinstance(value, str) and bool(_SAFE_NAME.match(value))


@lru_cache(maxsize=1)
def load_catalog() -> Dict[str, Any]:
    """Module catalogue from modules.json with sort_order filled in."""
    data = _safe_load_json(MODULES_INDEX_PATH)
    if isinstance(data, list):
        data = {"modules": data}
    if not isinstance(data, dict):
        return {"modules": []}
    modules = _sorted_modules(data.get("modules") or [])
    for i, m in enumerate(modules, start=1):
        m.setdefault("sort_order", i)
        m.setdefault("display_name", m["name"])
        m.setdefault("icon", "fas fa-book")
    return {"modules": modules}


def list_modules() -> List[Dict[str, Any]]:
    return list(load_catalog()["modules"])


def get_module(name: str) -> Optional[Dict[str, Any]]:
    for m in load_catalog()["modules"]:
        if m.get("name") == name:
            return m
    return None


def list_quiz_numbers(module_name: str) -> List[str]:
    if not is_safe_name(module_name):
        return []
    mod_dir = QUIZ_CONTENT_DIR / module_name
    if not mod_dir.is_dir():
        return []
    stems = [p.stem for p in mod_dir.glob("*.json") if is_safe_name(p.stem)]
    return sorted(stems, key=_order_key)


def normalize_question(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    options = raw.get("options")
    if not isinstance(options, list):
        options = []
    correct = raw.get("correctAnswer", raw.get("correct_answer"))
    try:
        correct = int(correct)
    except (TypeError, ValueError):
        correct = None
    qid = raw.get("id")
    return {
        "position": index,
        "id": qid if qid not in (None, "") else index + 1,
        "text": raw.get("text") or raw.get("question") or "",
        "options": [str(o) for o in options],
        "correctAnswer": correct,
        "explanation": raw.get("explanation") or "",
    }


def quiz_title(module: Optional[Dict[str, Any]], module_name: str, quiz_number: str) -> str:
    display = (module or {}).get("display_name") or module_name.replace("-", " ").title()
    return f"{display} Quiz {quiz_number}"


@lru_cache(maxsize=256)
def load_quiz(module_name: str, quiz_number: str) -> Optional[Dict[str, Any]]:
    """
    Load quizzes/<module>/<quiz_number>.json.
    The file is either a list of questions or {"title": ..., "questions": [...]}.
    Returns None when the file is missing, unreadable or empty.
    """
    if not (is_safe_name(module_name) and is_safe_name(str(quiz_number))):
        return None
    path = QUIZ_CONTENT_DIR / module_name / f"{quiz_number}.json"
    if not path.is_file():
        return None
    data = _safe_load_json(path)
    title = None
    if isinstance(data, dict):
        title = data.get("title")
        data = data.get("questions")
    if not isinstance(data, list) or not data:
        print(f"[quizzes] no questions in '{path}'")
        return None

    questions = [normalize_question(q, i) for i, q in enumerate(x for x in data if isinstance(x, dict))]
    module = get_module(module_name)
    return {
        "module": module_name,
        "quiz_number": str(quiz_number),
        "quiz_key": f"{module_name}/{quiz_number}",
        "title": title or quiz_title(module, module_name, str(quiz_number)),
        "questions": questions,
        "total_questions": len(questions),
    }


def sample_questions(questions: List[Dict[str, Any]], count: int,
                     rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    """Random subset (order shuffled), positions renumbered from 0."""
    pool = list(questions or [])
    count = max(0, min(int(count or 0), len(pool)))
    picked = (rng or random).sample(pool, count)
    out = []
    for i, q in enumerate(picked):
        q2 = dict(q)
        q2["position"] = i
        out.append(q2)
    return out


__all__ = [
    "load_catalog",
    "list_modules",
    "get_module",
    "list_quiz_numbers",
    "load_quiz",
    "normalize_question",
    "sample_questions",
    "is_safe_name",
]
