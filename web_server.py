# web_server.py
from flask import Flask, request, jsonify
from flask_socketio import SocketIO
import logging
import threading

from services.config_loader import load_config, load_service_configs
from services.workspace_service import WorkspaceService

app = Flask(__name__)

socketio = SocketIO(app, cors_allowed_origins="*")

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

workspace = None
_workspace_lock = threading.Lock()


def forward_event(event_name, payload):
    """
    Relaie une notification des services vers les clients Socket.IO.

    Les annulations sans résultat partiel arrivent sous `shotgunContextCancelled`,
    et non sous `shotgunContextError`: les clients doivent s'abonner aux deux.
    """
    socketio.emit(event_name, payload)


def init_services(config=None):
    """Crée la façade des services et branche le relais des notifications."""
    global workspace
    config = config if config is not None else load_config()
    if config.get('debug'):
        logging.getLogger().setLevel(logging.DEBUG)
    service = WorkspaceService(load_service_configs(config))
    service.emitter.on_all(forward_event)
    workspace = service
    app.logger.info("Services initialisés")
    return service


def get_workspace():
    global workspace
    with _workspace_lock:
        if workspace is None:
            init_services()
        return workspace


def _json_body():
    if not request.is_json:
        return None
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _respond(result, status=200):
    """Convertit un résultat {'success': ...} en réponse HTTP."""
    if not result.get('success'):
        return jsonify(result), 400
    return jsonify(result), status


def _require_json():
    data = _json_body()
    if data is None:
        return None, (jsonify({"success": False, "error": "Invalid request format: JSON expected."}), 400)
    return data, None


@app.route('/favicon.ico')
def favicon():
    return '', 204


@app.route('/api/status')
def status():
    ws = get_workspace()
    return jsonify({
        "success": True,
        "watching": ws.watcher.root_dir,
        "generation": ws.get_generation_status(),
        "use_gitignore": ws.settings.use_gitignore,
        "use_custom_ignore": ws.settings.use_custom_ignore,
    })


@app.route('/api/list_files', methods=['POST'])
def list_files():
    data, error = _require_json()
    if error:
        return error
    directory = data.get("directory")
    if not directory:
        return jsonify({"success": False, "error": "Missing directory."}), 400
    return _respond(get_workspace().list_files(directory, data.get("project_id")))


@app.route('/api/generate', methods=['POST'])
def generate_context():
    data, error = _require_json()
    if error:
        return error
    ws = get_workspace()
    if "project_paths" in data:
        project_paths = data.get("project_paths")
        if not isinstance(project_paths, list):
            return jsonify({"success": False, "error": "Invalid project_paths list."}), 400
        result = ws.request_multi_project_generation(project_paths, data.get("excluded_paths_by_project") or {})
    else:
        excluded_paths = data.get("excluded_paths") or []
        if not isinstance(excluded_paths, list):
            return jsonify({"success": False, "error": "Invalid excluded_paths list."}), 400
        result = ws.request_context_generation(data.get("directory"), excluded_paths)
    app.logger.info(f"Demande de génération: {'acceptée' if result.get('success') else result.get('error')}")
    return _respond(result, 202)


@app.route('/api/generate/projects', methods=['POST'])
def generate_projects_context():
    data = _json_body() or {}
    return _respond(get_workspace().request_generation_for_projects(data.get("project_ids")), 202)


@app.route('/api/generate/cancel', methods=['POST'])
def cancel_generation():
    return _respond(get_workspace().cancel_generation())


@app.route('/api/generate/status')
def generation_status():
    return _respond(get_workspace().get_generation_status())


@app.route('/api/watch/start', methods=['POST'])
def start_watch():
    data, error = _require_json()
    if error:
        return error
    return _respond(get_workspace().start_file_watcher(data.get("directory")))


@app.route('/api/watch/stop', methods=['POST'])
def stop_watch():
    return _respond(get_workspace().stop_file_watcher())


@app.route('/api/settings/ignore_rules', methods=['GET', 'POST'])
def ignore_rules():
    ws = get_workspace()
    if request.method == 'GET':
        return _respond(ws.get_custom_ignore_rules())
    data, error = _require_json()
    if error:
        return error
    rules = data.get("rules")
    if not isinstance(rules, str):
        return jsonify({"success": False, "error": "Missing rules text."}), 400
    return _respond(ws.set_custom_ignore_rules(rules))


@app.route('/api/settings/prompt_rules', methods=['GET', 'POST'])
def prompt_rules():
    ws = get_workspace()
    if request.method == 'GET':
        return _respond(ws.get_custom_prompt_rules())
    data, error = _require_json()
    if error:
        return error
    rules = data.get("rules")
    if not isinstance(rules, str):
        return jsonify({"success": False, "error": "Missing rules text."}), 400
    return _respond(ws.set_custom_prompt_rules(rules))


@app.route('/api/settings/use_gitignore', methods=['POST'])
def use_gitignore():
    data, error = _require_json()
    if error:
        return error
    return _respond(get_workspace().set_use_gitignore(bool(data.get("enabled", True))))


@app.route('/api/settings/use_custom_ignore', methods=['POST'])
def use_custom_ignore():
    data, error = _require_json()
    if error:
        return error
    return _respond(get_workspace().set_use_custom_ignore(bool(data.get("enabled", True))))


@app.route('/api/projects', methods=['GET', 'POST'])
def projects():
    ws = get_workspace()
    if request.method == 'GET':
        return _respond(ws.list_projects())
    data, error = _require_json()
    if error:
        return error
    return _respond(ws.add_project(data.get("directory")), 201)


@app.route('/api/projects/<project_id>', methods=['DELETE'])
def remove_project(project_id):
    result = get_workspace().remove_project(project_id)
    if not result.get('success'):
        return jsonify(result), 404
    return jsonify(result)


@app.route('/api/projects/<project_id>/exclusions', methods=['GET', 'POST'])
def project_exclusions(project_id):
    ws = get_workspace()
    if request.method == 'GET':
        return _respond(ws.get_excluded_paths(project_id))
    data, error = _require_json()
    if error:
        return error
    path = data.get("path")
    if not path:
        return jsonify({"success": False, "error": "Missing path."}), 400
    return _respond(ws.toggle_exclusion(project_id, path, bool(data.get("excluded", True))))


@socketio.on('connect')
def handle_connect():
    app.logger.info('Client Socket.IO connecté')


@socketio.on('disconnect')
def handle_disconnect():
    app.logger.info('Client Socket.IO déconnecté')


def run_server(host='127.0.0.1', port=5000, debug=False):
    get_workspace()
    try:
        socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)
    finally:
        workspace.shutdown()


if __name__ == '__main__':
    run_server()
