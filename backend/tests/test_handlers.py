"""Tests for the registered step handlers (http, notify, json/text/array, file, git)."""

import json
import shutil
import subprocess

import httpx
import pytest

from core.constants import StepStatus
from core.credentials import CredentialResolver
from core.exceptions import HandlerError
from tasks.registry import TaskRegistry


def _registry(handler=None, credentials=None) -> TaskRegistry:
    transport = httpx.MockTransport(handler) if handler else None
    return TaskRegistry(credentials=credentials, http_transport=transport)


@pytest.mark.unit
class TestRegistry:

    def test_family_lookup(self):
        registry = TaskRegistry()
        assert registry.get("http.get") is registry.get("http")
        assert registry.get("json.parse") is not None
        assert registry.get("nope.thing") is None

    async def test_unknown_action_raises(self):
        with pytest.raises(HandlerError, match="Unknown action: mystery"):
            await TaskRegistry().execute("mystery", {})

    def test_list_all(self):
        actions = [entry["action"] for entry in TaskRegistry().list_all()]
        assert actions == sorted(actions)
        assert {"http", "notify", "json", "text", "array", "file", "git"} <= set(actions)


@pytest.mark.unit
class TestHttpTask:

    async def test_get_parses_json(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.params["page"] == "2"
            return httpx.Response(200, json={"items": [1, 2]})

        result = await _registry(handler).execute("http.get", {"url": "https://api.test/x", "query": {"page": 2}})

        assert result.status == StepStatus.SUCCESS
        assert result.output["status"] == 200
        assert result.output["body"] == {"items": [1, 2]}

    async def test_post_sends_json_body(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["header"] = request.headers.get("x-extra")
            return httpx.Response(201, text="created")

        result = await _registry(handler).execute(
            "http.post",
            {"url": "https://api.test/x", "body": {"a": 1}, "headers": {"X-Extra": "yes"}},
        )

        assert result.success
        assert seen == {"body": {"a": 1}, "header": "yes"}
        assert result.output["body"] == "created"

    async def test_non_2xx_fails_with_output(self):
        result = await _registry(lambda r: httpx.Response(404, json={"error": "gone"})).execute(
            "http.get", {"url": "https://api.test/x"}
        )

        assert result.status == StepStatus.ERROR
        assert result.error.startswith("HTTP 404")
        assert result.output["body"] == {"error": "gone"}

    async def test_validate_status_expression(self):
        result = await _registry(lambda r: httpx.Response(404)).execute(
            "http.get", {"url": "https://api.test/x", "validateStatus": "status < 500"}
        )
        assert result.success
        assert result.output["body"] is None

    async def test_missing_url(self):
        result = await _registry().execute("http.get", {})
        assert result.error == "Missing required param: url"

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _registry(handler).execute("http.get", {"url": "https://api.test/x"})
        assert result.status == StepStatus.ERROR
        assert "refused" in result.error

    async def test_credential_headers_applied(self, tmp_path):
        creds = tmp_path / "credentials.json"
        creds.write_text(json.dumps({"gh": {"type": "bearer", "token": "{{ env.TOKEN }}"}}))
        resolver = CredentialResolver(creds, env={"TOKEN": "s3cret"})
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200)

        result = await _registry(handler, resolver).execute(
            "http.get", {"url": "https://api.test/x", "credential": "gh"}
        )

        assert result.success
        assert seen["auth"] == "Bearer s3cret"

    async def test_unknown_credential_fails_step(self, tmp_path):
        resolver = CredentialResolver(tmp_path / "none.json", env={})
        result = await _registry(lambda r: httpx.Response(200), resolver).execute(
            "http.get", {"url": "https://api.test/x", "credential": "missing"}
        )
        assert result.status == StepStatus.ERROR
        assert "Credential 'missing' not found" in result.error


@pytest.mark.unit
class TestNotifyTask:

    async def test_log_channel(self):
        result = await _registry().execute("notify.log", {"title": "Hi", "message": "done"})
        assert result.success
        assert result.output == {"channel": "log", "title": "Hi", "message": "done"}

    async def test_url_selects_webhook(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(204)

        result = await _registry(handler).execute("notify", {"message": "built", "url": "https://hooks.test/1"})

        assert result.output["channel"] == "webhook"
        assert seen["message"] == "built"
        assert seen["title"] == "automate"

    async def test_webhook_failure(self):
        result = await _registry(lambda r: httpx.Response(500)).execute(
            "notify.webhook", {"message": "x", "url": "https://hooks.test/1"}
        )
        assert result.status == StepStatus.ERROR
        assert result.error.startswith("Webhook send failed")

    async def test_missing_message(self):
        result = await _registry().execute("notify.log", {})
        assert result.error == "Missing required param: message"

    async def test_unknown_channel(self):
        result = await _registry().execute("notify", {"message": "x", "channel": "pigeon"})
        assert result.error == "Unknown notification channel: pigeon"


@pytest.mark.unit
class TestJsonTask:

    async def test_parse_and_invalid(self):
        registry = _registry()
        assert (await registry.execute("json.parse", {"input": '{"a": [1]}'})).output == {"a": [1]}
        bad = await registry.execute("json.parse", {"input": "{nope"})
        assert bad.error.startswith("Invalid JSON")

    async def test_stringify(self):
        result = await _registry().execute("json.stringify", {"input": {"a": 1}, "indent": 0})
        assert result.output == '{"a": 1}'

    async def test_query(self):
        data = {"data": {"items": [{"name": "first"}, {"name": "second"}]}}
        registry = _registry()
        assert (await registry.execute("json.query", {"input": data, "query": "data.items.1.name"})).output == "second"
        assert (await registry.execute("json.query", {"input": data, "query": "$.data.items.length"})).output == 2
        assert (await registry.execute("json.query", {"input": data, "query": "data.missing.x"})).output is None


@pytest.mark.unit
class TestTextTask:

    async def test_regex_global_and_single(self):
        registry = _registry()
        found = await registry.execute("text.regex", {"input": "a1 b22 c333", "pattern": r"\d+"})
        assert found.output == ["1", "22", "333"]
        single = await registry.execute("text.regex", {"input": "v=42", "pattern": r"v=(\d+)", "flags": ""})
        assert single.output == {"match": "v=42", "groups": ["42"]}

    async def test_regex_replace(self):
        result = await _registry().execute(
            "text.regex", {"input": "Hello hello", "pattern": "hello", "flags": "gi", "replacement": "bye"}
        )
        assert result.output == "bye bye"

    async def test_invalid_regex(self):
        result = await _registry().execute("text.regex", {"input": "x", "pattern": "("})
        assert result.error.startswith("Invalid regex")

    async def test_split_join(self):
        registry = _registry()
        assert (await registry.execute("text.split", {"input": "a,b", "separator": ","})).output == ["a", "b"]
        assert (await registry.execute("text.join", {"input": [1, True, "x"], "separator": "-"})).output == "1-true-x"
        assert (await registry.execute("text.join", {"input": "x"})).status == StepStatus.ERROR


@pytest.mark.unit
class TestArrayTask:

    async def test_filter_and_map(self):
        registry = _registry()
        items = [{"n": 1}, {"n": 5}, {"n": 9}]
        kept = await registry.execute("array.filter", {"input": items, "expression": "item.n > 3"})
        assert kept.output == [{"n": 5}, {"n": 9}]
        mapped = await registry.execute("array.map", {"input": items, "expression": "item.n * 10 + index"})
        assert mapped.output == [10, 51, 92]

    async def test_bad_expression_fails(self):
        result = await _registry().execute("array.map", {"input": [1], "expression": "item +"})
        assert result.status == StepStatus.ERROR

    async def test_sort_none_last(self):
        items = [{"k": 3}, {"k": None}, {"k": 1}]
        result = await _registry().execute("array.sort", {"input": items, "key": "k"})
        assert result.output == [{"k": 1}, {"k": 3}, {"k": None}]

    async def test_flatten_unique(self):
        registry = _registry()
        assert (await registry.execute("array.flatten", {"input": [1, [2, [3]]]})).output == [1, 2, 3]
        assert (await registry.execute("array.unique", {"input": [1, 1, {"a": 1}, {"a": 1}]})).output == [1, {"a": 1}]

    async def test_non_list_input(self):
        result = await _registry().execute("array.filter", {"input": "abc"})
        assert result.error == "array.filter input must be a list"


@pytest.mark.unit
class TestFileTask:

    async def test_write_then_read_creates_parents(self, tmp_path):
        registry = _registry()
        target = tmp_path / "out" / "nested" / "note.txt"
        written = await registry.execute("file.write", {"path": str(target), "content": "hello"})
        assert written.output == {"path": str(target), "size": 5}

        read = await registry.execute("file.read", {"path": str(target)})
        assert read.output["content"] == "hello"

    async def test_read_missing_file(self, tmp_path):
        result = await _registry().execute("file.read", {"path": str(tmp_path / "nope.txt")})
        assert result.status == StepStatus.ERROR
        assert result.error.startswith("File not found")

    async def test_copy_and_move(self, tmp_path):
        registry = _registry()
        source = tmp_path / "a.txt"
        source.write_text("data")

        await registry.execute("file.copy", {"source": str(source), "destination": str(tmp_path / "b" / "a.txt")})
        assert source.exists()
        assert (tmp_path / "b" / "a.txt").read_text() == "data"

        await registry.execute("file.move", {"source": str(source), "destination": str(tmp_path / "c.txt")})
        assert not source.exists()
        assert (tmp_path / "c.txt").read_text() == "data"

        missing = await registry.execute("file.move", {"source": str(source), "destination": str(tmp_path / "d.txt")})
        assert missing.error.startswith("Source not found")

    async def test_delete_reports_existence(self, tmp_path):
        registry = _registry()
        target = tmp_path / "gone.txt"
        target.write_text("x")
        assert (await registry.execute("file.delete", {"path": str(target)})).output["existed"] is True
        assert (await registry.execute("file.delete", {"path": str(target)})).output["existed"] is False

    async def test_glob_returns_sorted_files_only(self, tmp_path):
        (tmp_path / "logs" / "old").mkdir(parents=True)
        (tmp_path / "logs" / "b.log").write_text("")
        (tmp_path / "logs" / "a.log").write_text("")
        (tmp_path / "logs" / "old" / "c.log").write_text("")
        (tmp_path / "logs" / "notes.txt").write_text("")

        result = await _registry().execute("file.glob", {"pattern": "logs/**/*.log", "cwd": str(tmp_path)})
        assert result.output["count"] == 3
        assert result.output["files"] == sorted(result.output["files"])
        assert all(name.endswith(".log") for name in result.output["files"])

    async def test_template_file_with_variables(self, tmp_path):
        template = tmp_path / "report.tpl"
        template.write_text("Host {{ host }} is {{ state }}")
        out = tmp_path / "report.txt"

        result = await _registry().execute("file.template", {
            "templatePath": str(template),
            "variables": {"host": "db1", "state": "up"},
            "path": str(out),
        })
        assert result.output["content"] == "Host db1 is up"
        assert out.read_text() == "Host db1 is up"

    async def test_missing_required_param(self):
        result = await _registry().execute("file.copy", {"source": "a"})
        assert result.error == "file.copy requires param: destination"

    async def test_unknown_operation(self):
        result = await _registry().execute("file.chmod", {"path": "x"})
        assert result.error == "Unknown file action: file.chmod"


@pytest.fixture
def git_repo(tmp_path, monkeypatch):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    for key, value in {
        "GIT_AUTHOR_NAME": "automate", "GIT_AUTHOR_EMAIL": "automate@example.test",
        "GIT_COMMITTER_NAME": "automate", "GIT_COMMITTER_EMAIL": "automate@example.test",
    }.items():
        monkeypatch.setenv(key, value)
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=repo, check=True)
    return repo


@pytest.mark.integration
class TestGitTask:

    async def test_status_commit_log(self, git_repo):
        registry = _registry()
        (git_repo / "a.txt").write_text("one")

        status = await registry.execute("git.status", {"cwd": str(git_repo)})
        assert status.output["hasChanges"] is True
        assert status.output["files"] == [{"status": "??", "path": "a.txt"}]

        commit = await registry.execute("git.commit", {"cwd": str(git_repo), "message": "first"})
        assert commit.status == StepStatus.SUCCESS, commit.error
        assert commit.output["committed"] is True
        assert commit.output["sha"]

        log = await registry.execute("git.log", {"cwd": str(git_repo)})
        assert log.output["count"] == 1
        assert log.output["commits"][0] == {"sha": commit.output["sha"], "message": "first"}

        clean = await registry.execute("git.status", {"cwd": str(git_repo)})
        assert clean.output["hasChanges"] is False
        assert clean.output["branch"]

    async def test_commit_with_nothing_staged(self, git_repo):
        registry = _registry()
        (git_repo / "a.txt").write_text("one")
        await registry.execute("git.commit", {"cwd": str(git_repo)})

        again = await registry.execute("git.commit", {"cwd": str(git_repo)})
        assert again.status == StepStatus.SUCCESS
        assert again.output == {"committed": False, "message": "Nothing to commit"}

    async def test_branch_and_diff(self, git_repo):
        registry = _registry()
        (git_repo / "a.txt").write_text("one\n")
        await registry.execute("git.commit", {"cwd": str(git_repo), "message": "first"})

        branch = await registry.execute("git.branch", {"cwd": str(git_repo), "branch": "feature"})
        assert branch.output == {"branch": "feature"}
        (git_repo / "a.txt").write_text("two\n")
        await registry.execute("git.commit", {"cwd": str(git_repo), "message": "second"})

        diff = await registry.execute("git.diff", {"cwd": str(git_repo)})
        assert "+two" in diff.output["diff"]
        status = await registry.execute("git.status", {"cwd": str(git_repo)})
        assert status.output["branch"] == "feature"

    async def test_git_failure_carries_exit_code(self, git_repo):
        result = await _registry().execute("git.diff", {"cwd": str(git_repo), "from": "nope", "to": "HEAD"})
        assert result.status == StepStatus.ERROR
        assert result.exit_code != 0

    async def test_branch_requires_name(self, git_repo):
        result = await _registry().execute("git.branch", {"cwd": str(git_repo)})
        assert result.error == "git.branch requires a 'branch' param"
