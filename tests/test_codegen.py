"""Tests for the codegen module (server bundle emission)."""

import pytest

from openapi_mcp.artifact import ServerArtifact
from openapi_mcp.codegen import MANIFEST_NAME, emit
from openapi_mcp.errors import EmissionError, OutputExistsError


class TestEmit:
    """Test writing the bundle to disk."""

    def test_files_written(self, petstore_artifact, tmp_path):
        out = tmp_path / "bundle"
        written = emit(petstore_artifact, out)
        assert sorted(p.name for p in written) == sorted([MANIFEST_NAME, "server.py", ".env.example"])
        assert all(p.exists() for p in written)

    def test_manifest_loads_back(self, petstore_artifact, tmp_path):
        emit(petstore_artifact, tmp_path / "bundle")
        assert ServerArtifact.load(tmp_path / "bundle" / MANIFEST_NAME) == petstore_artifact

    def test_server_entry_point_is_valid_python(self, petstore_artifact, tmp_path):
        emit(petstore_artifact, tmp_path / "bundle")
        source = (tmp_path / "bundle" / "server.py").read_text()
        compile(source, "server.py", "exec")
        assert "run_server(HERE / \"manifest.json\")" in source
        assert "Swagger Petstore 1.0.0" in source
        assert "4 tools" in source

    def test_env_example(self, petstore_artifact, tmp_path):
        emit(petstore_artifact, tmp_path / "bundle")
        env = (tmp_path / "bundle" / ".env.example").read_text()
        assert "BACKEND_URL=https://api.example.test/v1\n" in env
        assert "API_KEY_VALUE=\n" in env
        assert "#   deletePet\n" in env

    def test_existing_directory_refused(self, petstore_artifact, tmp_path):
        out = tmp_path / "bundle"
        out.mkdir()
        (out / "keep.txt").write_text("mine")
        with pytest.raises(OutputExistsError) as excinfo:
            emit(petstore_artifact, out)
        assert excinfo.value.path == out
        assert not (out / MANIFEST_NAME).exists()

    def test_existing_empty_directory_allowed(self, petstore_artifact, tmp_path):
        emit(petstore_artifact, tmp_path)
        assert (tmp_path / MANIFEST_NAME).exists()

    def test_overwrite(self, petstore_artifact, tmp_path):
        emit(petstore_artifact, tmp_path / "bundle")
        emit(petstore_artifact, tmp_path / "bundle", overwrite=True)
        assert (tmp_path / "bundle" / "server.py").exists()

    def test_duplicate_names_rejected(self, petstore_artifact, tmp_path):
        first = petstore_artifact.tools[0]
        duplicate = first.model_copy(update={
            "definition": petstore_artifact.tools[1].definition.model_copy(update={"name": first.name}),
        })
        artifact = petstore_artifact.model_copy(update={"tools": [first, duplicate]})
        with pytest.raises(EmissionError, match=first.name):
            emit(artifact, tmp_path / "bundle")
        assert not (tmp_path / "bundle").exists()
