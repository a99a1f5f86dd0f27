import logging
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from config import Config
from models import db
from routes.device import device_bp
from routes.fleet import fleet_bp
from routes.management import management_bp
from routes.user_devices import user_devices_bp
from services.errors import FleetError

app = Flask(__name__)
app.config.from_object(Config)
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("fleet-c2")

db.init_app(app)

app.register_blueprint(device_bp)
app.register_blueprint(fleet_bp)
app.register_blueprint(management_bp)
app.register_blueprint(user_devices_bp)

@app.errorhandler(FleetError)
def handle_fleet_error(e):
    if e.status_code >= 500:
        logger.error(f"Request failed: {e.message}")
    return jsonify({"error": e.message}), e.status_code

@app.errorhandler(SQLAlchemyError)
def handle_db_error(e):
    db.session.rollback()
    logger.exception("Database error")
    return jsonify({"error": "Internal server error"}), 500

@app.route("/health")
def health():
    return {
        "status": "ok",
        "broadcastDelivery": Config.BROADCAST_DELIVERY,
    }

with app.app_context():
    db.create_all()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=Config.FLASK_PORT, debug=True)
