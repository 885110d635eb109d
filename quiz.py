# quiz.py
# -----------------------------------------------------------------------------
# Quiz taking, submission and review.
# Submit pipeline: grade -> persist attempt -> recompute module summary ->
# drop the user's dashboard cache entry -> render results.
# - Full-page form and a one-question-per-page step flow (state in session)
# - Stored attempts are reviewable by their owner only
# - Practice mode: random questions, graded, never persisted
# -----------------------------------------------------------------------------

import os
from typing import Any, Dict, List, Optional, Tuple, Callable

from flask import (
    Blueprint, request, jsonify, render_template, redirect, url_for, session, flash, abort, g
)

from attempts import new_attempt, complete_attempt
from cache import dashboard_key
from grader import grade_quiz, parse_answers_payload, parse_time_spent, coerce_answer
from progress import recompute_module_progress
from quiz_session import (
    QuizSessionError, new_state, is_valid_state, reduce, elapsed_label, progress_percent
)
from quiz_loader import sample_questions
from stores import PersistenceError, AttemptConflictError

PRACTICE_MAX_QUESTIONS = int(os.getenv("PRACTICE_MAX_QUESTIONS") or 10)
STEP_STATE_KEY = "quiz_state"
PRACTICE_KEY = "practice_refs"
LAST_ATTEMPT_KEY = "last_attempt_id"


def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Registers:
      GET      /quiz/<module>/<quiz>            one-page quiz form
      GET|POST /quiz/<module>/<quiz>/step       one question per page
      POST     /quiz/<module>/<quiz>/submit     grade + save + results page
      GET      /quiz/<module>/<quiz>/results    redirect to the latest review
      GET      /review/<attempt_id>             stored review (owner only)
      POST     /api/quiz/submit                 JSON submit
      GET|POST /practice                        random questions, not saved
    Required deps: attempt_store, summary_store, catalog_store, cache,
                   get_module, load_quiz, list_modules, list_quiz_numbers
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    attempt_store = deps["attempt_store"]
    summary_store = deps["summary_store"]
    catalog_store = deps["catalog_store"]
    cache = deps["cache"]
    get_module: Callable = deps["get_module"]
    load_quiz: Callable = deps["load_quiz"]
    list_modules: Callable = deps["list_modules"]
    list_quiz_numbers: Callable = deps["list_quiz_numbers"]

    # ------------------------------- helpers ----------------------------------
    def _quiz_or_404(module_name: str, quiz_number: str) -> Dict[str, Any]:
        quiz = load_quiz(module_name, quiz_number)
        if not quiz:
            abort(404)
        return quiz

    def _module_for(quiz: Dict[str, Any]) -> Dict[str, Any]:
        return get_module(quiz["module"]) or {"name": quiz["module"], "display_name": quiz["module"]}

    def _refresh_progress(module_id: Any):
        """Summary failures are logged; the attempt is already saved and counts."""
        try:
            total = catalog_store.count_active_quizzes(module_id)
            recompute_module_progress(attempt_store, summary_store, g.user_id, module_id, total)
        except PersistenceError as e:
            print(f"[progress] summary refresh failed for user={g.user_id} module={module_id}: {e}")

    def _record_attempt(quiz: Dict[str, Any], answers: List[Any],
                        time_spent: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Grade and save one attempt. Raises PersistenceError when it could not be saved."""
        module_row = catalog_store.ensure_module(_module_for(quiz))
        quiz_row = catalog_store.ensure_quiz(module_row["id"], quiz)

        result = grade_quiz(quiz["questions"], answers, time_spent)
        seconds = parse_time_spent(time_spent)

        stored = None
        for retry in (False, True):
            number = attempt_store.next_attempt_number(g.user_id, quiz_row["id"])
            attempt = complete_attempt(
                new_attempt(g.user_id, quiz_row, number, quiz_key=quiz["quiz_key"]),
                result, time_spent_seconds=seconds,
            )
            try:
                stored = attempt_store.insert(attempt)
                break
            except AttemptConflictError:
                if retry:
                    raise
                print(f"[quiz] attempt #{number} for {quiz['quiz_key']} taken, renumbering")

        print(f"[quiz] saved attempt {stored.get('id')} {quiz['quiz_key']} "
              f"user={g.user_id} score={result['percentage']}%")
        _refresh_progress(module_row["id"])
        cache.invalidate(dashboard_key(g.user_id))
        session[LAST_ATTEMPT_KEY] = stored.get("id")
        return result, stored

    def _results_page(quiz: Dict[str, Any], result: Dict[str, Any],
                      attempt: Optional[Dict[str, Any]] = None, review: bool = False):
        return render_template(
            "results.html",
            quiz=quiz,
            module=_module_for(quiz),
            result=result,
            attempt=attempt,
            review=review,
        )

    def _save_failed(quiz: Dict[str, Any], err: Exception):
        print(f"[quiz] could not save attempt for {quiz.get('quiz_key')}: {err}")
        return render_template(
            "error.html",
            title="Submission failed",
            message="Your answers were graded but could not be saved. Please submit again.",
        ), 500

    # ------------------------------ one-page form -----------------------------
    @bp.get("/quiz/<module_name>/<quiz_number>")
    def take_quiz(module_name: str, quiz_number: str):
        quiz = _quiz_or_404(module_name, quiz_number)
        return render_template(
            "quiz.html",
            quiz=quiz,
            module=_module_for(quiz),
            submit_url=url_for(f"{bp.name}.submit_quiz", module_name=module_name, quiz_number=quiz_number),
            step_url=url_for(f"{bp.name}.quiz_step", module_name=module_name, quiz_number=quiz_number),
        )

    @bp.post("/quiz/<module_name>/<quiz_number>/submit")
    def submit_quiz(module_name: str, quiz_number: str):
        quiz = _quiz_or_404(module_name, quiz_number)
        answers = parse_answers_payload(request.form, quiz["total_questions"])
        try:
            result, stored = _record_attempt(quiz, answers, request.form.get("timeSpent"))
        except PersistenceError as e:
            return _save_failed(quiz, e)
        return _results_page(quiz, result, stored)

    @bp.get("/quiz/<module_name>/<quiz_number>/results")
    def quiz_results(module_name: str, quiz_number: str):
        attempt_id = session.get(LAST_ATTEMPT_KEY)
        if attempt_id:
            return redirect(url_for(f"{bp.name}.review_attempt", attempt_id=attempt_id))
        return redirect(url_for(f"{bp.name}.take_quiz", module_name=module_name, quiz_number=quiz_number))

    # ------------------------------- step flow --------------------------------
    @bp.route("/quiz/<module_name>/<quiz_number>/step", methods=["GET", "POST"])
    def quiz_step(module_name: str, quiz_number: str):
        quiz = _quiz_or_404(module_name, quiz_number)
        total = quiz["total_questions"]
        state = session.get(STEP_STATE_KEY)
        if request.args.get("restart") or not is_valid_state(state, quiz["quiz_key"], total) \
                or state.get("submitted"):
            state = new_state(quiz["quiz_key"], total)

        if request.method == "POST":
            action = (request.form.get("action") or "").strip()
            payload = request.form.get("option") if action == "select" else request.form.get("position")
            current = quiz["questions"][state["current"]] if total else {}
            try:
                state = reduce(state, action, payload, option_count=len(current.get("options") or []))
            except QuizSessionError as e:
                flash(str(e), "error")
            else:
                if state["submitted"]:
                    session.pop(STEP_STATE_KEY, None)
                    try:
                        result, stored = _record_attempt(quiz, state["answers"], elapsed_label(state))
                    except PersistenceError as e:
                        return _save_failed(quiz, e)
                    return _results_page(quiz, result, stored)
            session[STEP_STATE_KEY] = state
            return redirect(url_for(f"{bp.name}.quiz_step", module_name=module_name, quiz_number=quiz_number))

        session[STEP_STATE_KEY] = state
        question = quiz["questions"][state["current"]] if total else None
        return render_template(
            "quiz_step.html",
            quiz=quiz,
            module=_module_for(quiz),
            question=question,
            state=state,
            selected=state["answers"][state["current"]] if total else None,
            progress=progress_percent(state),
            elapsed=elapsed_label(state),
            is_last=bool(total) and state["current"] == total - 1,
        )

    # -------------------------------- review ----------------------------------
    @bp.get("/review/<int:attempt_id>")
    def review_attempt(attempt_id: int):
        try:
            attempt = attempt_store.get(attempt_id)
        except PersistenceError as e:
            print(f"[quiz] review fetch failed for {attempt_id}: {e}")
            return render_template("error.html", title="Review unavailable",
                                   message="This attempt could not be loaded right now."), 500
        if not attempt:
            abort(404)
        if str(attempt.get("user_id")) != str(g.user_id):
            abort(403)

        module_name, _, quiz_number = (attempt.get("quiz_key") or "").partition("/")
        quiz = load_quiz(module_name, quiz_number) if quiz_number else None
        if not quiz:
            quiz = {"module": module_name or "", "quiz_number": quiz_number,
                    "quiz_key": attempt.get("quiz_key"), "title": "Quiz", "questions": [],
                    "total_questions": attempt.get("total_questions") or 0}
        return _results_page(quiz, attempt.get("review_json") or {}, attempt, review=True)

    # ------------------------------- JSON API ---------------------------------
    @bp.post("/api/quiz/submit")
    def api_submit():
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return jsonify({"ok": False, "error": "expected a JSON object"}), 400
        module_name = str(data.get("module") or "").strip()
        quiz_number = str(data.get("quizId") or data.get("quiz") or "").strip()
        if not module_name or not quiz_number:
            return jsonify({"ok": False, "error": "module and quizId are required"}), 400
        quiz = load_quiz(module_name, quiz_number)
        if not quiz:
            return jsonify({"ok": False, "error": "quiz not found"}), 404
        try:
            result, stored = _record_attempt(quiz, parse_answers_payload(data, quiz["total_questions"]),
                                             data.get("timeSpent"))
        except PersistenceError as e:
            print(f"[quiz] api submit failed for {quiz['quiz_key']}: {e}")
            return jsonify({"ok": False, "error": "attempt could not be saved"}), 500
        return jsonify({
            "ok": True,
            "attempt_id": stored.get("id"),
            "attempt_number": stored.get("attempt_number"),
            "result": result,
        })

    # ------------------------------- practice ---------------------------------
    def _practice_pool(module_name: Optional[str]) -> List[Dict[str, Any]]:
        pool = []
        for m in list_modules():
            if module_name and m["name"] != module_name:
                continue
            for number in list_quiz_numbers(m["name"]):
                quiz = load_quiz(m["name"], number) or {}
                for q in quiz.get("questions") or []:
                    pool.append({**q, "ref": [m["name"], number, q["position"]]})
        return pool

    def _resolve_refs(refs: Any) -> List[Dict[str, Any]]:
        questions = []
        for ref in refs or []:
            if not isinstance(ref, (list, tuple)) or len(ref) != 3:
                continue
            quiz = load_quiz(str(ref[0]), str(ref[1])) or {}
            pos = coerce_answer(ref[2])
            qs = quiz.get("questions") or []
            if pos is not None and pos < len(qs):
                questions.append({**qs[pos], "position": len(questions)})
        return questions

    @bp.route("/practice", methods=["GET", "POST"])
    def practice():
        modules = list_modules()
        if request.method == "POST":
            questions = _resolve_refs(session.pop(PRACTICE_KEY, None))
            if not questions:
                flash("Your practice set expired. Start a new one.", "error")
                return redirect(url_for(f"{bp.name}.practice"))
            result = grade_quiz(questions, parse_answers_payload(request.form, len(questions)),
                                request.form.get("timeSpent"))
            return render_template("practice.html", modules=modules, questions=questions, result=result)

        module_name = (request.args.get("module") or "").strip() or None
        if "count" not in request.args:
            return render_template("practice.html", modules=modules, questions=None, result=None,
                                   max_questions=PRACTICE_MAX_QUESTIONS)
        count = coerce_answer(request.args.get("count")) or PRACTICE_MAX_QUESTIONS
        picked = sample_questions(_practice_pool(module_name), min(count, PRACTICE_MAX_QUESTIONS))
        session[PRACTICE_KEY] = [q["ref"] for q in picked]
        return render_template("practice.html", modules=modules, questions=picked, result=None,
                               selected_module=module_name, max_questions=PRACTICE_MAX_QUESTIONS)

    return bp


__all__ = ["create_quiz_blueprint"]
