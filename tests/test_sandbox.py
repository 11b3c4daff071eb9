"""Tests for the sandboxed transformer runner."""

import asyncio
import json
from datetime import datetime, timezone
from unittest import mock

import pytest

from metriq.transformation import sandbox_runner
from metriq.transformation.sandbox import encode_request, run_in_sandbox, to_portable


def _run(code, bindings=None, **kwargs):
    return asyncio.run(run_in_sandbox(code, bindings or {"api_response": None, "endpoint_config": {}}, **kwargs))


class TestRunInSandbox:
    def test_returns_entrypoint_result(self):
        code = "def transform(api_response, endpoint_config):\n    return [{'value': api_response['n'] * 2}]\n"
        result = _run(code, {"api_response": {"n": 21}, "endpoint_config": {}})
        assert result.success
        assert result.data == [{"value": 42}]

    def test_bindings_are_also_globals(self):
        code = "def transform(a, b):\n    return endpoint_config['OWNER']\n"
        result = _run(code, {"api_response": {}, "endpoint_config": {"OWNER": "octocat"}})
        assert result.success
        assert result.data == "octocat"

    def test_syntax_error_reports_line(self):
        result = _run("def transform(a, b)\n    return 1\n")
        assert not result.success
        assert result.error.startswith("Syntax error:")
        assert "(line 1)" in result.error

    def test_runtime_error_names_exception(self):
        code = "def transform(api_response, endpoint_config):\n    return api_response['nope']\n"
        result = _run(code, {"api_response": {}, "endpoint_config": {}})
        assert not result.success
        assert result.error.startswith("KeyError")

    def test_missing_entrypoint(self):
        result = _run("x = 1\n")
        assert not result.success
        assert result.error == "Transformer code must define a 'transform' function"

    def test_timeout_kills_runaway_code(self):
        code = "def transform(api_response, endpoint_config):\n    while True:\n        pass\n"
        result = _run(code, timeout=1)
        assert not result.success
        assert result.error == "Script execution timed out after 1s"

    def test_disallowed_import_is_blocked(self):
        code = "import os\n\ndef transform(api_response, endpoint_config):\n    return os.getcwd()\n"
        result = _run(code)
        assert not result.success
        assert "ImportError" in result.error
        assert "'os'" in result.error

    def test_open_is_not_available(self):
        code = "def transform(api_response, endpoint_config):\n    return open('/etc/passwd').read()\n"
        result = _run(code)
        assert not result.success
        assert result.error.startswith("NameError")

    def test_allowed_imports_work(self):
        code = (
            "import math\n"
            "from collections import Counter\n"
            "from datetime import datetime\n\n"
            "def transform(api_response, endpoint_config):\n"
            "    c = Counter(api_response)\n"
            "    return {'sqrt': math.sqrt(16), 'most': c.most_common(1)[0][0],\n"
            "            'year': datetime.fromisoformat('2024-05-01').year}\n"
        )
        result = _run(code, {"api_response": ["a", "b", "a"], "endpoint_config": {}})
        assert result.success
        assert result.data == {"sqrt": 4.0, "most": "a", "year": 2024}

    def test_print_does_not_corrupt_output(self):
        code = "def transform(api_response, endpoint_config):\n    print('debug')\n    return [1]\n"
        result = _run(code)
        assert result.success
        assert result.data == [1]

    def test_datetime_bindings_cross_as_iso_strings(self):
        ts = datetime(2024, 3, 1, tzinfo=timezone.utc)
        code = "def transform(data_points, preferences):\n    return data_points[0]['timestamp']\n"
        result = _run(code, {"data_points": [{"timestamp": ts}], "preferences": {}})
        assert result.success
        assert result.data == "2024-03-01T00:00:00+00:00"


class TestIsolation:
    def test_subclass_walk_cannot_reach_os(self, tmp_path):
        victim = tmp_path / "keep-me.txt"
        victim.write_text("host data")
        code = (
            "def transform(api_response, endpoint_config):\n"
            "    for cls in ().__class__.__base__.__subclasses__():\n"
            "        if cls.__name__ == '_wrap_close':\n"
            "            cls.__init__.__globals__['unlink'](api_response['path'])\n"
            "    return []\n"
        )

        result = _run(code, {"api_response": {"path": str(victim)}, "endpoint_config": {}})

        assert not result.success
        assert result.error.startswith("Restricted code rejected:")
        assert 'starts with "_"' in result.error
        assert victim.exists()

    def test_allowed_module_does_not_leak_its_imports(self):
        code = (
            "import json\n\n"
            "def transform(api_response, endpoint_config):\n"
            "    return json.codecs.sys.modules['os'].getcwd()\n"
        )
        result = _run(code)
        assert not result.success
        assert result.error == "AttributeError: Attribute 'codecs' is not available in transformers"

    def test_generator_frames_are_unreachable(self):
        code = (
            "def transform(api_response, endpoint_config):\n"
            "    gen = (x for x in [1])\n"
            "    return gen.gi_frame.f_builtins\n"
        )
        result = _run(code)
        assert not result.success
        assert result.error.startswith("AttributeError")

    def test_missing_attribute_raises(self):
        code = "def transform(api_response, endpoint_config):\n    return api_response.nope\n"
        result = _run(code, {"api_response": {}, "endpoint_config": {}})
        assert not result.success
        assert result.error == "AttributeError: 'dict' object has no attribute 'nope'"

    def test_everyday_constructs_still_work(self):
        code = (
            "def transform(api_response, endpoint_config):\n"
            "    total = 0\n"
            "    for n in api_response:\n"
            "        total += n\n"
            "    first, second = api_response[:2]\n"
            "    return {'total': total, 'max': max(*api_response), 'pair': [first, second], 'label': f'{first}!'}\n"
        )
        result = _run(code, {"api_response": [3, 1, 2], "endpoint_config": {}})
        assert result.success
        assert result.data == {"total": 6, "max": 3, "pair": [3, 1], "label": "3!"}


class TestPrivilegeDrop:
    def test_root_switches_to_nobody(self):
        with mock.patch.object(sandbox_runner.os, "getuid", return_value=0), \
                mock.patch.object(sandbox_runner.os, "setgroups") as setgroups, \
                mock.patch.object(sandbox_runner.os, "setgid") as setgid, \
                mock.patch.object(sandbox_runner.os, "setuid") as setuid:
            sandbox_runner._drop_privileges()
        setgroups.assert_called_once_with([])
        setgid.assert_called_once_with(sandbox_runner.UNPRIVILEGED_ID)
        setuid.assert_called_once_with(sandbox_runner.UNPRIVILEGED_ID)

    def test_unprivileged_user_is_left_alone(self):
        with mock.patch.object(sandbox_runner.os, "getuid", return_value=1000), \
                mock.patch.object(sandbox_runner.os, "setuid") as setuid:
            sandbox_runner._drop_privileges()
        setuid.assert_not_called()


class TestEncoding:
    def test_request_carries_limits(self):
        payload = json.loads(encode_request("x = 1", {"a": 1}))
        assert payload["entrypoint"] == "transform"
        assert payload["bindings"] == {"a": 1}
        assert set(payload["limits"]) == {"cpu_seconds", "memory_mb"}

    def test_unportable_object_rejected(self):
        with pytest.raises(TypeError):
            to_portable(object())


class TestRunnerInProcess:
    """The child's ``run`` is plain Python and can be exercised directly."""

    def test_non_serializable_result(self):
        response = sandbox_runner.run(
            {"code": "def transform():\n    return {1, 2}\n", "bindings": {}}
        )
        assert not response["success"]
        assert "non-serializable" in response["error"]

    def test_relative_import_rejected(self):
        with pytest.raises(ImportError):
            sandbox_runner._restricted_import("json", level=1)

    def test_dotted_import_returns_top_package(self):
        module = sandbox_runner._restricted_import("collections.abc")
        assert module.__name__ == "collections"
