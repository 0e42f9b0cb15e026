import sqlite3

from flask import Flask, jsonify, render_template_string

from db import JobRegistry
from models import JobStatus


HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta http-equiv="refresh" content="5">
    <title>retrievectl jobs</title>
    <style>
        body { font-family: system-ui, sans-serif; margin: 24px; color: #222; }
        table { border-collapse: collapse; margin-bottom: 24px; }
        th, td { text-align: left; padding: 4px 12px; border-bottom: 1px solid #ddd; }
        .pending { color: #666; }
        .running { color: #0b5cad; }
        .completed { color: #1e7b34; }
        .failed { color: #b3261e; }
        .cancelled { color: #8a6d00; }
    </style>
</head>
<body>
    <h1>retrievectl jobs</h1>

    <table>
        <tr>
        {% for status in summary %}<th class="{{ status }}">{{ status }}</th>{% endfor %}
        {% for key in metrics %}<th>{{ key.replace('_', ' ') }}</th>{% endfor %}
        </tr>
        <tr>
        {% for status in summary %}<td>{{ summary[status] }}</td>{% endfor %}
        {% for key in metrics %}<td>{{ metrics[key] }}</td>{% endfor %}
        </tr>
    </table>

    <table>
        <tr><th>ID</th><th>Command</th><th>Status</th><th>Progress</th><th>Phase</th><th>Items</th><th>Created</th><th>Error</th></tr>
        {% for job in jobs %}
        <tr>
            <td><code>{{ job.id }}</code></td>
            <td>{{ job.command }}</td>
            <td class="{{ job.status }}">{{ job.status }}{% if job.cancelReason %} ({{ job.cancelReason }}){% endif %}</td>
            <td><progress value="{{ job.progress }}" max="100"></progress> {{ job.progress }}%</td>
            <td>{{ job.phase or '' }}</td>
            <td>{% if job.totalItems %}{{ job.completedItems or 0 }}/{{ job.totalItems }}{% endif %}</td>
            <td>{{ job.createdAt }}</td>
            <td>{{ job.error or '' }}</td>
        </tr>
        {% else %}
        <tr><td colspan="8">No jobs yet.</td></tr>
        {% endfor %}
    </table>
</body>
</html>
"""


def create_app(db_path=None):
    """Builds the dashboard app reading from the job database at ``db_path``."""
    app = Flask(__name__)
    registry = JobRegistry(db_path)

    def _snapshots():
        return [job.snapshot().to_dict() for job in reversed(registry.list_jobs())]

    @app.route("/")
    def dashboard():
        """Main dashboard page."""
        try:
            summary = {s.value: 0 for s in JobStatus}
            summary.update(registry.status_summary())
            return render_template_string(
                HTML_TEMPLATE,
                summary=summary,
                metrics=registry.get_metrics(),
                jobs=_snapshots(),
            )
        except sqlite3.Error as e:
            return f"Database error: {e}", 500

    @app.route("/api/jobs")
    def api_jobs():
        return jsonify(_snapshots())

    @app.route("/api/jobs/<job_id>")
    def api_job(job_id):
        job = registry.get_job(job_id)
        if job is None:
            return jsonify({"error": "not found", "id": job_id}), 404
        return jsonify(job.snapshot().to_dict())

    return app


def run_dashboard(db_path=None, port=5000):
    """Starts the Flask web server."""
    print("Starting retrievectl dashboard...")
    print(f"View at: http://127.0.0.1:{port}")
    create_app(db_path).run(host="127.0.0.1", port=port)
