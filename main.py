import logging
import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from backend.payloads import (
    parse_attach_hint,
    parse_create_session,
    parse_feedback_request,
    parse_hint_request,
    parse_list_query,
    parse_object_id,
    parse_problem_request,
    parse_submission,
)
from backend.session_store import SessionStore
from buddy_ai.answers import answers_match
from buddy_ai.buddy_ai import BuddyAIUtil
from buddy_ai.errors import BuddyError, NotConfiguredError
from buddy_ai.gemini import GEMINI_MODEL_OPTIONS

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def create_server(*, store: SessionStore | None = None, ai_util: BuddyAIUtil | None = None) -> Flask:
    """Build the tutor API.

    ``store`` may be None when persistence is not configured; session routes
    then answer 500 while generation routes keep working.
    """
    server = Flask(__name__)
    ai = ai_util or BuddyAIUtil()

    def require_store() -> SessionStore:
        if store is None:
            raise NotConfiguredError("Session store", "MONGO_URI / MONGO_DB are not set")
        return store

    @server.errorhandler(BuddyError)
    def handle_buddy_error(e: BuddyError):
        if e.status_code >= 500:
            logger.exception("%s on %s %s: %s", type(e).__name__, request.method, request.path, e)
        else:
            logger.warning("%s on %s %s: %s", type(e).__name__, request.method, request.path, e)
        return jsonify(e.to_json()), e.status_code

    @server.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Something went wrong. Please try again."}), 500

    @server.route("/api/getModels", methods=["GET"])
    def get_models():
        return jsonify({
            "models": [{"value": value, "label": label} for value, label in GEMINI_MODEL_OPTIONS],
            "default": ai.registry.default_model_id,
        })

    @server.route("/api/generateProblem", methods=["POST"])
    async def generate_problem():
        problem_request = parse_problem_request(request.get_json(silent=True))
        problem = await ai.generate_problem(problem_request)
        return jsonify(problem.to_json())

    @server.route("/api/createSession", methods=["POST"])
    async def create_session():
        payload = parse_create_session(request.get_json(silent=True))
        session = await require_store().create_session(
            payload.config,
            payload.problem,
            payload.answer,
            payload.working,
            payload.choices,
        )
        return jsonify({"session": session.to_json()})

    @server.route("/api/getSessions", methods=["GET"])
    async def get_sessions():
        query = parse_list_query(request.args)
        records = await require_store().list_sessions(
            status=query.status,
            difficulty=query.difficulty,
            limit=query.limit,
        )
        return jsonify({"sessions": [r.to_json() for r in records]})

    @server.route("/api/getSession/<sessionID>", methods=["GET"])
    async def get_session(sessionID):
        obj_id = parse_object_id(sessionID)
        record = await require_store().get_session(obj_id)
        return jsonify({"session": record.to_json()})

    @server.route("/api/submitAnswer/<sessionID>", methods=["POST"])
    async def submit_answer(sessionID):
        obj_id = parse_object_id(sessionID)
        payload = parse_submission(request.get_json(silent=True))
        sessions = require_store()

        session = await sessions.find_session(obj_id)
        model = payload.model or session.config.model
        evaluation = await ai.evaluate_submission(
            problem=payload.problem or session.problem,
            correct_answer=payload.correct_answer or session.answer,
            student_answer=payload.student_answer,
            model=model,
        )
        submission = await sessions.append_submission(
            obj_id,
            payload.student_answer,
            evaluation.is_correct,
            evaluation.feedback,
            numeric_answer=evaluation.numeric_answer,
            answer_source=evaluation.answer_source,
        )
        return jsonify({"submission": submission.to_json()})

    @server.route("/api/attachHint/<sessionID>", methods=["POST"])
    async def attach_hint(sessionID):
        obj_id = parse_object_id(sessionID)
        hint = parse_attach_hint(request.get_json(silent=True))
        if hint is None:
            return jsonify({"updated": False})
        updated = await require_store().attach_hint(obj_id, hint)
        return jsonify({"updated": updated})

    @server.route("/api/requestHint", methods=["POST"])
    async def request_hint():
        payload = parse_hint_request(request.get_json(silent=True))
        hint = await ai.provide_hint(problem=payload.problem, working=payload.working, model=payload.model)
        return jsonify({"hint": hint})

    @server.route("/api/provideFeedback", methods=["POST"])
    async def provide_feedback():
        payload = parse_feedback_request(request.get_json(silent=True))
        result = await ai.provide_feedback(
            problem=payload.problem,
            correct_answer=payload.correct_answer,
            student_answer=payload.student_answer,
            is_correct=answers_match(payload.correct_answer, payload.student_answer),
            model=payload.model,
        )
        return jsonify({
            "feedback": result.feedback,
            "isCorrect": result.is_correct,
            "usedFallback": result.used_fallback,
        })

    @server.route("/api/getProgress", methods=["GET"])
    async def get_progress():
        return jsonify(await require_store().score())

    return server


if __name__ == '__main__':
    from backend.mongo import connect
    from set_env_vars import initialize_env_vars

    initialize_env_vars()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format=LOG_FORMAT)

    try:
        session_store = SessionStore(connect())
    except NotConfiguredError as e:
        logger.warning("Running without a session store: %s", e)
        session_store = None

    server = create_server(store=session_store)
    server.run(port=int(os.environ.get("PORT", "8080")))
