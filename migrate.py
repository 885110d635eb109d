#!/usr/bin/env python3
# migrate.py
# Mirror quizzes/modules.json and quizzes/<module>/<n>.json into the
# modules / quizzes tables. Safe to re-run: both inserts upsert.
#
#   python migrate.py                 # every module
#   python migrate.py os database     # only these modules

import sys
from typing import Any, Callable, Dict, Iterable, Optional

from stores import PersistenceError


def sync_catalog(catalog_store, list_modules: Callable, list_quiz_numbers: Callable,
                 load_quiz: Callable, only: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    wanted = set(only or [])
    counts = {"modules": 0, "quizzes": 0, "failed": 0}

    for module in list_modules():
        if wanted and module["name"] not in wanted:
            continue
        try:
            row = catalog_store.ensure_module(module)
        except PersistenceError as e:
            print(f"[migrate] module {module['name']} failed: {e}")
            counts["failed"] += 1
            continue
        counts["modules"] += 1
        print(f"[migrate] module {module['name']} -> id {row['id']}")

        for number in list_quiz_numbers(module["name"]):
            quiz = load_quiz(module["name"], number)
            if not quiz:
                print(f"[migrate] skipping {module['name']}/{number}: no questions")
                continue
            try:
                catalog_store.ensure_quiz(row["id"], quiz)
            except PersistenceError as e:
                print(f"[migrate] quiz {quiz['quiz_key']} failed: {e}")
                counts["failed"] += 1
                continue
            counts["quizzes"] += 1
            print(f"[migrate]   quiz {quiz['quiz_key']} ({quiz['total_questions']} questions)")

    return counts


if __name__ == "__main__":
    from main import catalog_store
    from quiz_loader import list_modules, list_quiz_numbers, load_quiz

    result = sync_catalog(catalog_store, list_modules, list_quiz_numbers, load_quiz, only=sys.argv[1:])
    print(f"[migrate] done: {result['modules']} modules, {result['quizzes']} quizzes, {result['failed']} failed")
    sys.exit(1 if result["failed"] else 0)
