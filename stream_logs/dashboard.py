"""Flask status endpoint for a running log streamer."""

from flask import Flask, jsonify

from stream_logs.metrics import ShipperMetrics


def create_dashboard_app(metrics: ShipperMetrics, pipeline=None, controller=None) -> Flask:
    app = Flask(__name__)

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    @app.route("/stats")
    def stats():
        snap = metrics.snapshot()
        snap["in_flight"] = pipeline.in_flight if pipeline is not None else 0
        snap["active_segment_bytes"] = controller.active_bytes if controller is not None else 0
        return jsonify(snap)

    return app


def run_dashboard(app: Flask, port: int):
    """Run the Flask app (intended for use in a daemon thread)."""
    app.run(host="0.0.0.0", port=port, use_reloader=False)
