# home.py
from typing import Any, Dict
from flask import render_template, abort, request, jsonify

def register_home_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/home"                 -> endpoint 'home'
      - GET "/modules/<name>"       -> endpoint 'module_page'
      - GET "/api/modules-quizzes"  -> endpoint 'modules_quizzes'
    BASE_PATH aliases are added when base_path is set.
    """
    list_modules = deps["list_modules"]
    get_module = deps["get_module"]
    list_quiz_numbers = deps["list_quiz_numbers"]
    load_quiz = deps["load_quiz"]

    def _alias(rule: str, view_func, endpoint: str):
        if not base_path:
            return
        alias_rule = f"{base_path}{rule if rule.startswith('/') else '/' + rule}"
        app.add_url_rule(alias_rule, endpoint=f"{endpoint}_alias", view_func=view_func, methods=["GET"])

    def _quiz_cards(module_name: str):
        cards = []
        for number in list_quiz_numbers(module_name):
            quiz = load_quiz(module_name, number)
            if not quiz:
                continue
            cards.append({
                "quiz_number": number,
                "title": quiz["title"],
                "total_questions": quiz["total_questions"],
            })
        return cards

    # ----- Routes -----
    def home():
        modules = []
        for m in list_modules():
            modules.append({**m, "quiz_count": len(list_quiz_numbers(m["name"]))})
        return render_template("index.html", title="Home", modules=modules)

    def module_page(name: str):
        module = get_module(name)
        if not module:
            abort(404)
        return render_template("module.html", module=module, quizzes=_quiz_cards(name))

    def modules_quizzes():
        """?module=<name> -> quiz list; ?module=<name>&quizId=<n> -> question count."""
        module_name = (request.args.get("module") or "").strip()
        quiz_id = (request.args.get("quizId") or "").strip()
        if not module_name:
            return jsonify({"modules": [
                {"name": m["name"], "display_name": m.get("display_name")} for m in list_modules()
            ]})
        if not get_module(module_name):
            return jsonify({"ok": False, "error": "module not found"}), 404
        if quiz_id:
            quiz = load_quiz(module_name, quiz_id)
            if not quiz:
                return jsonify({"ok": False, "error": "quiz not found"}), 404
            return jsonify({"module": module_name, "quizId": quiz_id, "totalQuestions": quiz["total_questions"]})
        return jsonify({"module": module_name, "quizzes": [
            {"id": c["quiz_number"], "name": c["title"], "totalQuestions": c["total_questions"]}
            for c in _quiz_cards(module_name)
        ]})

    app.add_url_rule("/home", view_func=home, methods=["GET"], endpoint="home")
    app.add_url_rule("/modules/<name>", view_func=module_page, methods=["GET"], endpoint="module_page")
    app.add_url_rule("/api/modules-quizzes", view_func=modules_quizzes, methods=["GET"], endpoint="modules_quizzes")

    _alias("/home", home, "home")
    _alias("/modules/<name>", module_page, "module_page")
    _alias("/api/modules-quizzes", modules_quizzes, "modules_quizzes")
