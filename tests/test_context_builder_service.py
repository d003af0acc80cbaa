import threading

import pytest
from unittest.mock import patch

from services.context_builder_service import (CANCELLED_MARKER, TRUNCATED_MARKER, ContextBuilderService,
                                              GenerationTarget)
from services.exceptions import ContextTooLongException, FileServiceException, OperationCancelledException
from services.ignore_rules import IgnoreRules, PatternSet
from test_utils import make_tree


EXPECTED_SIMPLE = (
    "proj/\n"
    "├── src\n"
    "│   └── main.py\n"
    "└── README.md\n"
    "\n"
    '<file path="src/main.py">\n'
    "print('hi')\n"
    "</file>\n"
    '<file path="README.md">\n'
    "# Readme\n"
    "</file>"
)


class TestContextBuilderService:
    """Tests unitaires pour ContextBuilderService."""

    @pytest.fixture
    def context_builder(self):
        """Fixture pour créer une instance de ContextBuilderService."""
        return ContextBuilderService({})

    @pytest.fixture
    def project(self, tmp_path):
        return make_tree(tmp_path / "proj", {
            "README.md": "# Readme",
            "src": {"main.py": "print('hi')"},
        })

    def test_init(self):
        """Test de l'initialisation du service."""
        service = ContextBuilderService({'max_output_size_bytes': 1234})
        assert service.max_output_size_bytes == 1234
        assert ContextBuilderService({}).max_output_size_bytes == 10_000_000

    def test_invalid_config(self):
        """Test d'une taille maximale invalide."""
        with pytest.raises(ValueError):
            ContextBuilderService({'max_output_size_bytes': 0})

    def test_build_context_format(self, context_builder, project):
        """Test du format exact: arborescence puis blocs <file>."""
        output = context_builder.build_context(GenerationTarget(str(project)))
        assert output == EXPECTED_SIMPLE

    def test_progress_is_monotonic_and_complete(self, context_builder, project):
        """Test des notifications de progression."""
        calls = []
        context_builder.build_context(GenerationTarget(str(project)),
                                      progress_callback=lambda current, total: calls.append((current, total)))
        # 1 ligne racine + 3 entrées + 2 fichiers
        assert calls[-1] == (6, 6)
        currents = [c for c, _ in calls]
        assert currents == sorted(currents)
        assert len(set(currents)) == len(currents)

    def test_count_processable_items(self, context_builder, project):
        assert context_builder.count_processable_items(GenerationTarget(str(project))) == 6

    def test_root_excluded(self, context_builder, project):
        """Test qu'une racine exclue donne uniquement la ligne racine."""
        output = context_builder.build_context(GenerationTarget(str(project), excluded_paths=["."]))
        assert output == "proj/\n"

    def test_all_files_excluded(self, context_builder, project):
        """Test qu'une racine dont tous les fichiers sont exclus donne la ligne racine seule."""
        target = GenerationTarget(str(project), excluded_paths=["README.md", "src"])
        assert context_builder.build_context(target) == "proj/\n"

    def test_exclusions_normalized(self, context_builder, project):
        """Test que les exclusions saisies avec './' ou '/' final correspondent aux chemins parcourus."""
        target = GenerationTarget(str(project), excluded_paths=["./README.md", "src/"])
        assert target.excluded_paths == {"README.md", "src"}
        assert context_builder.build_context(target) == "proj/\n"

    def test_ignored_entries_omitted(self, context_builder, tmp_path):
        """Test que les entrées ignorées n'apparaissent ni dans l'arbre ni dans les contenus."""
        root = make_tree(tmp_path / "proj", {
            "build": {"out.txt": "generated"},
            "debug.log": "noise",
            "main.py": "x = 1",
        })
        rules = IgnoreRules(gitignore=PatternSet.compile("*.log"), custom=PatternSet.compile("build/"))
        output = context_builder.build_context(GenerationTarget(str(root), ignore_rules=rules))
        assert "build" not in output
        assert "debug.log" not in output
        assert output.startswith("proj/\n└── main.py\n\n")

    def test_last_entry_connector_after_filtering(self, context_builder, tmp_path):
        """Test que le dernier connecteur est calculé après filtrage."""
        root = make_tree(tmp_path / "proj", {"a.py": "a", "z.log": "z"})
        rules = IgnoreRules(custom=PatternSet.compile("*.log"))
        output = context_builder.build_context(GenerationTarget(str(root), ignore_rules=rules))
        assert output.startswith("proj/\n└── a.py\n")

    def test_file_read_error_inlined(self, context_builder, project):
        """Test qu'une erreur de lecture est remplacée par un message dans le bloc."""
        with patch.object(context_builder.file_service, 'read_file_content',
                          side_effect=PermissionError("Permission denied")):
            output = context_builder.build_context(GenerationTarget(str(project)))
        assert '<file path="README.md">\nError reading file: Permission denied\n</file>' in output

    def test_size_ceiling_boundary(self, project):
        """Test du plafond: N octets passent, N-1 échouent."""
        size = len(EXPECTED_SIMPLE.encode('utf-8'))
        exact = ContextBuilderService({'max_output_size_bytes': size})
        assert exact.build_context(GenerationTarget(str(project))) == EXPECTED_SIMPLE
        too_small = ContextBuilderService({'max_output_size_bytes': size - 1})
        with pytest.raises(ContextTooLongException) as exc_info:
            too_small.build_context(GenerationTarget(str(project)))
        assert exc_info.value.limit == size - 1
        assert str(exc_info.value) == "context is too long"

    def test_size_counts_utf8_bytes(self, tmp_path):
        """Test que la taille est comptée en octets UTF-8."""
        root = make_tree(tmp_path / "p", {"é.txt": "ééé"})
        output = ContextBuilderService({}).build_context(GenerationTarget(str(root)))
        size = len(output.encode('utf-8'))
        assert size > len(output)
        with pytest.raises(ContextTooLongException):
            ContextBuilderService({'max_output_size_bytes': len(output)}).build_context(GenerationTarget(str(root)))

    def test_missing_root(self, context_builder, tmp_path):
        """Test qu'une racine inexistante fait échouer la génération."""
        with pytest.raises(FileServiceException):
            context_builder.build_context(GenerationTarget(str(tmp_path / "missing")))

    def test_cancellation(self, context_builder, project):
        cancel_event = threading.Event()
        cancel_event.set()
        with pytest.raises(OperationCancelledException):
            context_builder.build_context(GenerationTarget(str(project)), cancel_event)

    def test_iter_includable_files_order(self, context_builder, project):
        """Test de l'ordre de la sonde, identique à celui du rendu."""
        files = list(context_builder.iter_includable_files(GenerationTarget(str(project))))
        assert files == ["src/main.py", "README.md"]

    def test_has_includable_content(self, context_builder, tmp_path):
        empty = make_tree(tmp_path / "empty", {"sub": {}})
        assert context_builder.has_includable_content(GenerationTarget(str(empty))) == False
        ignored = make_tree(tmp_path / "ignored", {"x.log": "x"})
        rules = IgnoreRules(custom=PatternSet.compile("*.log"))
        assert context_builder.has_includable_content(GenerationTarget(str(ignored), ignore_rules=rules)) == False
        assert context_builder.has_includable_content(GenerationTarget(str(ignored))) == True


class TestMultiProjectContext:
    """Tests de la génération multi-projets."""

    @pytest.fixture
    def projects(self, tmp_path):
        one = make_tree(tmp_path / "one", {"a.py": "a = 1"})
        two = make_tree(tmp_path / "two", {"b.py": "b = 2"})
        empty = make_tree(tmp_path / "empty", {"sub": {}})
        return one, two, empty

    def test_headers_and_separator(self, projects):
        """Test des en-têtes par projet et du séparateur."""
        one, two, _ = projects
        output = ContextBuilderService({}).build_multi_project_context(
            [GenerationTarget(str(one)), GenerationTarget(str(two))])
        assert output == (
            f"=== PROJECT: one ===\nProject Root: {one}\n\n"
            'one/\n└── a.py\n\n<file path="a.py">\na = 1\n</file>'
            "\n\n"
            f"=== PROJECT: two ===\nProject Root: {two}\n\n"
            'two/\n└── b.py\n\n<file path="b.py">\nb = 2\n</file>'
        )

    def test_single_included_project_has_one_header(self, projects):
        """Test qu'une seule racine avec du contenu donne un seul en-tête."""
        one, _, empty = projects
        output = ContextBuilderService({}).build_multi_project_context(
            [GenerationTarget(str(one)), GenerationTarget(str(empty))])
        assert output.count("=== PROJECT:") == 1
        assert "empty" not in output

    def test_per_root_exclusions(self, projects):
        """Test que chaque racine applique ses propres exclusions."""
        one, two, _ = projects
        output = ContextBuilderService({}).build_multi_project_context(
            [GenerationTarget(str(one), excluded_paths=["a.py"]), GenerationTarget(str(two))])
        assert "=== PROJECT: one ===" not in output
        assert "=== PROJECT: two ===" in output

    def test_overflow_raises_by_default(self, projects):
        one, two, _ = projects
        builder = ContextBuilderService({'max_output_size_bytes': 150})
        with pytest.raises(ContextTooLongException):
            builder.build_multi_project_context([GenerationTarget(str(one)), GenerationTarget(str(two))])

    def test_overflow_truncates_when_enabled(self, projects):
        """Test du marqueur de troncature optionnel."""
        one, two, _ = projects
        first_only = ContextBuilderService({}).build_multi_project_context([GenerationTarget(str(one))])
        builder = ContextBuilderService({
            'max_output_size_bytes': len(first_only.encode('utf-8')) + 10,
            'truncate_multi_project_output': True,
        })
        output = builder.build_multi_project_context([GenerationTarget(str(one)), GenerationTarget(str(two))])
        assert output == first_only + TRUNCATED_MARKER

    def test_cancellation_carries_partial_output(self, projects):
        """Test que l'annulation en cours de route conserve les projets terminés."""
        one, two, _ = projects
        builder = ContextBuilderService({})
        cancel_event = threading.Event()
        original_render = builder._render_target
        rendered = []

        def render_then_cancel(target, *args, **kwargs):
            original_render(target, *args, **kwargs)
            rendered.append(target.name)
            cancel_event.set()

        with patch.object(builder, '_render_target', side_effect=render_then_cancel):
            with pytest.raises(OperationCancelledException) as exc_info:
                builder.build_multi_project_context(
                    [GenerationTarget(str(one)), GenerationTarget(str(two))], cancel_event)
        assert rendered == ["one"]
        assert exc_info.value.partial_output.startswith("=== PROJECT: one ===")
        assert "two" not in exc_info.value.partial_output
        assert CANCELLED_MARKER not in exc_info.value.partial_output
