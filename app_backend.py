import hmac
import logging
import os

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from death_verification_system import DeathVerificationSystem, configure_logging
from verification_engine import NO_VERIFICATION
from verification_models import Forbidden, VerificationError, format_datetime

logger = logging.getLogger(__name__)

TRUSTEE_HEADER = 'X-Trustee-Email'
ADMIN_HEADER = 'X-Admin-Token'


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('true', '1', 'yes', 'on')


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data


def create_app(system: DeathVerificationSystem) -> Flask:
    app = Flask(__name__)
    CORS(app)
    engine = system.engine

    def trustee_email():
        return (request.headers.get(TRUSTEE_HEADER) or '').strip().lower()

    def has_admin_token() -> bool:
        token = request.headers.get(ADMIN_HEADER) or ''
        # Compared as bytes; header values may carry non-ASCII characters
        return bool(token) and hmac.compare_digest(token.encode(), system.admin_token.encode())

    def require_admin():
        if not has_admin_token():
            raise Forbidden('Forbidden - Admin access required')

    @app.errorhandler(VerificationError)
    def handle_verification_error(error):
        return jsonify({"success": False, "message": str(error)}), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"success": False, "message": "Internal server error"}), 500

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "scheduler_running": system.scheduler.is_running})

    @app.route("/api/death-verification/verify", methods=["POST"])
    def verify_death():
        data = _payload()
        result = engine.attest(
            data.get('userId'),
            trustee_email(),
            data.get('verificationMethod'),
            data.get('dateOfDeath'),
            place=data.get('placeOfDeath'),
            notes=data.get('additionalNotes'),
            confirmed=_truthy(data.get('confirmVerification')),
            certificate_ref=data.get('certificateRef'),
        )
        return jsonify({
            "success": True,
            "message": result.message,
            "deathVerification": {
                "id": result.episode_id,
                "status": result.status.value,
                "verifiedTrustees": result.verified_count,
                "requiredTrustees": result.required_count,
                "quorumReached": result.quorum_reached,
                "alreadyVerified": result.already_attested,
                "verificationMethod": data.get('verificationMethod'),
                "dateOfDeath": data.get('dateOfDeath'),
                "placeOfDeath": data.get('placeOfDeath'),
            }
        })

    @app.route("/api/death-verification/status/<subject_id>", methods=["GET"])
    def get_status(subject_id):
        episode = engine.get_status(subject_id)
        if episode == NO_VERIFICATION:
            return jsonify({
                "success": True,
                "status": NO_VERIFICATION,
                "message": "No death verification found"
            })
        return jsonify({"success": True, "deathVerification": episode.to_dict()})

    @app.route("/api/death-verification/pending", methods=["GET"])
    def pending_verifications():
        episodes = engine.list_pending(trustee_email())
        return jsonify({
            "success": True,
            "pendingVerifications": [e.to_dict() for e in episodes]
        })

    @app.route("/api/death-verification/schedule", methods=["POST"])
    def schedule_verification():
        data = _payload()
        result = engine.schedule(
            data.get('userId'),
            data.get('scheduledDate'),
            data.get('autoVerifyAfterDays'),
        )
        return jsonify({
            "success": True,
            "message": "Death verification scheduled successfully",
            "deathVerification": {
                "id": result.episode_id,
                "scheduledDate": format_datetime(result.scheduled_date),
                "autoVerifyAfterDays": result.auto_resolve_after_days,
            }
        })

    @app.route("/api/death-verification/release/<subject_id>", methods=["POST"])
    def release_messages(subject_id):
        result = engine.release(subject_id, trustee_email(), is_admin=has_admin_token())
        return jsonify({
            "success": True,
            "message": "Video messages released successfully",
            "deathVerification": {
                "id": result.episode_id,
                "status": result.status.value,
                "verificationDate": format_datetime(result.verification_date),
                "releasedMessageCount": result.released_message_count,
            }
        })

    @app.route("/api/death-verification/trigger-emails/<subject_id>", methods=["POST"])
    def trigger_emails(subject_id):
        require_admin()
        notified = engine.resend_notifications(subject_id)
        return jsonify({
            "success": True,
            "message": "Email notifications sent successfully to all recipients",
            "notifiedRecipients": notified
        })

    @app.route("/api/admin/trigger-death-verification", methods=["POST"])
    def trigger_sweep():
        require_admin()
        data = _payload()
        report = engine.sweep_resolve(data.get('now'))
        return jsonify({
            "success": True,
            "message": "Scheduled death verification check completed",
            "report": report.to_dict()
        })

    @app.route("/api/admin/death-verifications", methods=["GET"])
    def list_death_verifications():
        require_admin()
        listing = engine.list_episodes(
            status=request.args.get('status'),
            kind=request.args.get('verificationType'),
            method=request.args.get('verificationMethod'),
            page=request.args.get('page', 1),
            limit=request.args.get('limit', 10),
        )
        return jsonify({
            "success": True,
            "deathVerifications": {
                "data": [e.to_dict() for e in listing['data']],
                "pagination": listing['pagination'],
            },
            "stats": listing['stats']
        })

    @app.route("/api/admin/death-verifications/<int:episode_id>", methods=["GET"])
    def get_death_verification(episode_id):
        require_admin()
        return jsonify({"success": True, "deathVerification": engine.get_episode(episode_id).to_dict()})

    @app.route("/api/admin/death-verifications/<subject_id>/reject", methods=["POST"])
    def reject_death_verification(subject_id):
        require_admin()
        episode = engine.reject(subject_id, _payload().get('reason'))
        return jsonify({
            "success": True,
            "message": "Death verification rejected",
            "deathVerification": episode.to_dict()
        })

    return app


if __name__ == '__main__':
    dvs = DeathVerificationSystem.from_config_file(os.environ.get("AFTERNOTE_CONFIG", "config.json"))
    configure_logging(dvs.config.get('log_file'))
    dvs.start()
    app = create_app(dvs)
    try:
        app.run(debug=False)
    finally:
        dvs.stop()
