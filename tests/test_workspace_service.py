import pytest

from services.event_emitter import (EVENT_CONTEXT_ERROR, EVENT_CONTEXT_GENERATED, EVENT_FILES_CHANGED)
from services.workspace_service import WorkspaceService
from test_utils import EventRecorder, FakeObserver, make_tree


@pytest.fixture
def workspace(tmp_path):
    """Façade avec des paramètres isolés et un observateur en mémoire."""
    configs = {
        'settings_service': {'settings_path': str(tmp_path / "settings" / "settings.json")},
        'context_builder': {'max_output_size_bytes': 100_000},
        'watch_service': {'event_poll_interval': 0.05},
    }
    service = WorkspaceService(configs, observer_factory=FakeObserver)
    yield service
    service.shutdown()


@pytest.fixture
def recorder(workspace):
    return EventRecorder(workspace.emitter)


@pytest.fixture
def project(tmp_path):
    return make_tree(tmp_path / "proj", {
        ".gitignore": "*.log\n",
        "main.py": "print('main')",
        "debug.log": "noise",
        "node_modules": {"dep": {"index.js": "js"}},
    })


class TestWorkspaceService:
    """Tests d'intégration de la façade."""

    def test_list_files(self, workspace, project):
        result = workspace.list_files(str(project))
        assert result['success'] == True
        root = result['tree'][0]
        children = {c['name']: c for c in root['children']}
        assert children['debug.log']['isGitignored'] == True
        assert children['node_modules']['isCustomIgnored'] == True
        assert children['node_modules']['children'] == []

    def test_list_files_invalid(self, workspace, tmp_path):
        result = workspace.list_files(str(tmp_path / "missing"))
        assert result['success'] == False
        assert 'error' in result

    def test_generation_applies_active_rules(self, workspace, recorder, project):
        """Test que la génération applique .gitignore et règles personnalisées."""
        result = workspace.request_context_generation(str(project))
        assert result['success'] == True
        assert workspace.generator.wait_for_idle(5)
        output = recorder.payloads(EVENT_CONTEXT_GENERATED)[0]
        assert output == 'proj/\n├── .gitignore\n└── main.py\n\n' \
                         '<file path=".gitignore">\n*.log\n\n</file>\n' \
                         '<file path="main.py">\nprint(\'main\')\n</file>'

    def test_generation_with_toggles_off(self, workspace, recorder, project):
        workspace.set_use_gitignore(False)
        workspace.set_use_custom_ignore(False)
        workspace.request_context_generation(str(project), ["node_modules"])
        assert workspace.generator.wait_for_idle(5)
        output = recorder.payloads(EVENT_CONTEXT_GENERATED)[0]
        assert "debug.log" in output
        assert "node_modules" not in output

    def test_generation_invalid_directory(self, workspace, tmp_path):
        result = workspace.request_context_generation(str(tmp_path / "missing"))
        assert result['success'] == False

    def test_generation_too_long(self, tmp_path, project):
        service = WorkspaceService({
            'settings_service': {'settings_path': str(tmp_path / "s.json")},
            'context_builder': {'max_output_size_bytes': 10},
        }, observer_factory=FakeObserver)
        recorder = EventRecorder(service.emitter)
        service.request_context_generation(str(project))
        assert service.generator.wait_for_idle(5)
        assert len(recorder.payloads(EVENT_CONTEXT_ERROR)) == 1
        service.shutdown()

    def test_multi_project_generation(self, workspace, recorder, tmp_path, project):
        other = make_tree(tmp_path / "other", {"lib.py": "x = 1"})
        result = workspace.request_multi_project_generation(
            [str(project), str(other)], {str(project): ["main.py"]})
        assert result['success'] == True
        assert workspace.generator.wait_for_idle(5)
        output = recorder.payloads(EVENT_CONTEXT_GENERATED)[0]
        assert "=== PROJECT: proj ===" in output
        assert "=== PROJECT: other ===" in output
        assert '<file path="main.py">' not in output

    def test_single_path_multi_project_generation_has_header(self, workspace, recorder, project):
        """Test que la forme de la demande, et non le nombre de racines, fixe le format."""
        assert workspace.request_multi_project_generation([str(project)])['success'] == True
        assert workspace.generator.wait_for_idle(5)
        output = recorder.payloads(EVENT_CONTEXT_GENERATED)[0]
        assert output.startswith(f"=== PROJECT: proj ===\nProject Root: {project}\n\nproj/\n")
        assert output.count("=== PROJECT:") == 1

    def test_registered_projects_generation(self, workspace, recorder, project):
        added = workspace.add_project(str(project))
        assert added['success'] == True
        project_id = added['project']['id']
        workspace.toggle_exclusion(project_id, ".gitignore", True)
        assert workspace.request_generation_for_projects()['success'] == True
        assert workspace.generator.wait_for_idle(5)
        output = recorder.payloads(EVENT_CONTEXT_GENERATED)[0]
        assert output.startswith(f"=== PROJECT: proj ===\nProject Root: {project}\n\nproj/\n")
        assert '<file path=".gitignore">' not in output
        assert workspace.settings.get_last_directory() == str(project)

    def test_registered_projects_empty(self, workspace):
        assert workspace.request_generation_for_projects()['success'] == False
        assert workspace.request_generation_for_projects(["project_0"])['success'] == False

    def test_watcher_refresh_on_rule_change(self, workspace, recorder, project):
        """Test que la modification des règles rafraîchit la surveillance active."""
        result = workspace.start_file_watcher(str(project))
        assert result['success'] == True
        assert str(project / "node_modules") not in workspace.watcher.watched_dirs

        assert workspace.set_custom_ignore_rules("*.tmp\n")['success'] == True
        assert str(project / "node_modules") in workspace.watcher.watched_dirs
        assert recorder.payloads(EVENT_FILES_CHANGED) == [str(project)]

        workspace.set_use_custom_ignore(True)
        assert len(recorder.payloads(EVENT_FILES_CHANGED)) == 2

        assert workspace.stop_file_watcher()['success'] == True
        workspace.set_use_gitignore(False)
        assert len(recorder.payloads(EVENT_FILES_CHANGED)) == 2

    def test_start_watcher_invalid(self, workspace, tmp_path):
        assert workspace.start_file_watcher(str(tmp_path / "missing"))['success'] == False

    def test_prompt_rules(self, workspace):
        assert workspace.set_custom_prompt_rules("answer in French")['success'] == True
        assert workspace.get_custom_prompt_rules()['rules'] == "answer in French"

    def test_generation_status(self, workspace):
        status = workspace.get_generation_status()
        assert status['state'] == "idle"
        assert status['last_job_state'] is None
