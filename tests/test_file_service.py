import os
import threading

import pytest
from unittest.mock import patch

from services.exceptions import FileServiceException, OperationCancelledException
from services.file_service import FileService, TreeNode
from services.ignore_rules import IgnoreRules, PatternSet
from test_utils import make_tree


class TestFileService:
    """Tests unitaires pour FileService (parcours de l'arborescence)."""

    @pytest.fixture
    def file_service(self):
        """Fixture pour créer une instance de FileService."""
        return FileService({'debug': False})

    @pytest.fixture
    def project(self, tmp_path):
        """Projet temporaire avec un répertoire ignoré et un .gitignore."""
        return make_tree(tmp_path / "proj", {
            ".gitignore": "*.log\n",
            "b.txt": "b",
            "a.txt": "a",
            "A": {"inner.py": "x = 1"},
            "app.log": "log",
            "node_modules": {"pkg": {"index.js": "js"}},
        })

    def test_init(self):
        """Test de l'initialisation du service."""
        service = FileService({'debug': True})
        assert service.config == {'debug': True}
        assert service.gitignore_cache == {}

    def test_invalid_root(self, file_service):
        """Test avec un chemin invalide."""
        with pytest.raises(FileServiceException):
            file_service.list_files('')
        with pytest.raises(FileServiceException):
            file_service.list_files('/non/existent/path')

    def test_sibling_ordering(self, file_service, tmp_path):
        """Test de l'ordre: répertoires d'abord puis nom insensible à la casse."""
        root = make_tree(tmp_path / "r", {"b.txt": "", "A": {}, "a.txt": ""})
        tree = file_service.list_files(str(root))
        assert [child.name for child in tree.children] == ["A", "a.txt", "b.txt"]

    def test_root_node(self, file_service, project):
        """Test du nœud racine."""
        tree = file_service.list_files(str(project))
        assert tree.name == "proj"
        assert tree.rel_path == "."
        assert tree.is_dir == True
        assert tree.path == str(project)

    def test_ignored_directory_listed_without_children(self, file_service, project):
        """Test qu'un répertoire ignoré est listé mais jamais parcouru."""
        rules = IgnoreRules(custom=PatternSet.compile("node_modules/"))
        tree = file_service.list_files(str(project), rules)
        node_modules = next(c for c in tree.children if c.name == "node_modules")
        assert node_modules.is_custom_ignored == True
        assert node_modules.children == []

    def test_gitignore_flags(self, file_service, project):
        """Test des indicateurs issus du .gitignore du projet."""
        gitignore = file_service.load_gitignore(str(project))
        tree = file_service.list_files(str(project), IgnoreRules(gitignore=gitignore))
        log = next(c for c in tree.children if c.name == "app.log")
        main = next(c for c in tree.children if c.name == "a.txt")
        assert log.is_gitignored == True
        assert log.is_custom_ignored == False
        assert main.is_gitignored == False

    def test_nested_relative_paths(self, file_service, project):
        """Test des chemins relatifs POSIX des nœuds imbriqués."""
        tree = file_service.list_files(str(project))
        a_dir = tree.children[0]
        assert a_dir.name == "A"
        assert a_dir.children[0].rel_path == "A/inner.py"

    def test_excluded_paths_omitted(self, file_service, project):
        """Test que les chemins exclus sont omis de la liste."""
        tree = file_service.list_files(str(project), excluded_paths={"A", "b.txt"})
        names = [c.name for c in tree.children]
        assert "A" not in names
        assert "b.txt" not in names
        assert "a.txt" in names

    def test_unreadable_subdirectory_has_no_children(self, file_service, project):
        """Test qu'un sous-répertoire illisible est traité comme vide."""
        original_scandir = os.scandir

        def failing_scandir(path):
            if os.path.basename(str(path)) == "A":
                raise PermissionError("accès refusé")
            return original_scandir(path)

        with patch('services.file_utils.os.scandir', side_effect=failing_scandir):
            tree = file_service.list_files(str(project))
        a_dir = next(c for c in tree.children if c.name == "A")
        assert a_dir.children == []

    def test_unreadable_root_raises(self, file_service, project):
        """Test qu'une racine illisible fait échouer l'opération."""
        with patch('services.file_utils.os.scandir', side_effect=PermissionError("accès refusé")):
            with pytest.raises(FileServiceException):
                file_service.list_files(str(project))

    def test_cancellation_propagates(self, file_service, project):
        """Test que l'annulation interrompt le parcours."""
        cancel_event = threading.Event()
        cancel_event.set()
        with pytest.raises(OperationCancelledException):
            file_service.list_files(str(project), cancel_event=cancel_event)

    def test_to_dict_keys(self, file_service, project):
        """Test de la sérialisation attendue par le frontend."""
        tree = file_service.list_files(str(project), project_id="project_1")
        data = tree.to_dict()
        assert data['relPath'] == "."
        assert data['isDir'] == True
        assert data['projectId'] == "project_1"
        assert isinstance(data['children'], list)
        file_node = next(c for c in data['children'] if c['name'] == "a.txt")
        assert 'children' not in file_node
        assert file_node['isGitignored'] == False

    def test_gitignore_cache(self, file_service, project):
        """Test du cache du dernier .gitignore compilé."""
        first = file_service.get_cached_gitignore(str(project))
        assert first is not None
        assert file_service.get_cached_gitignore(str(project)) is first
        (project / ".gitignore").write_text("*.txt\n")
        reloaded = file_service.load_gitignore(str(project))
        assert reloaded is not first
        assert reloaded.matches("a.txt") == True

    def test_read_file_content_replaces_invalid_utf8(self, file_service, tmp_path):
        path = tmp_path / "bin.dat"
        path.write_bytes(b"ok\xff")
        assert file_service.read_file_content(str(path)) == "ok�"

    def test_tree_node_is_ignored(self):
        node = TreeNode("x", "/r/x", "x", False, is_custom_ignored=True)
        assert node.is_ignored == True
