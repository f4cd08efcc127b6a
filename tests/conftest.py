# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures: a scripted invoker and a small .NET repository layout."""

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest

from dotnet_incremental.invoker import InvocationResult, Invoker

PASSED_OUTPUT = "Passed!  - Failed:     0, Passed:     1, Skipped:     0, Total:     1\n"

Response = Union[Tuple[int, str], Exception]


class FakeInvoker(Invoker):
    """Invoker that replays scripted responses and records every call.

    Responses are queued per target; the last one repeats. Targets without a
    script succeed with PASSED_OUTPUT. A delay keeps the call in flight until
    it elapses or the cancel event fires.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, List[str]]] = []
        self.intervals: Dict[str, Tuple[float, float]] = {}
        self._responses: Dict[str, List[Response]] = {}
        self._delays: Dict[str, float] = {}
        self._lock = threading.Lock()

    def respond(self, target: str, *responses: Response, delay: float = 0.0) -> None:
        self._responses[target] = list(responses)
        self._delays[target] = delay

    def calls_for(self, target: str) -> List[List[str]]:
        with self._lock:
            return [flags for call_target, _verb, flags in self.calls if call_target == target]

    def _next(self, target: str) -> Response:
        with self._lock:
            queued = self._responses.get(target)
            if not queued:
                return (0, PASSED_OUTPUT)
            return queued.pop(0) if len(queued) > 1 else queued[0]

    def invoke(
        self,
        target: str,
        verb: str,
        flags: Sequence[str],
        on_line=None,
        cancel: Optional[threading.Event] = None,
    ) -> InvocationResult:
        start = time.monotonic()
        with self._lock:
            self.calls.append((target, verb, list(flags)))
        response = self._next(target)
        if isinstance(response, Exception):
            raise response

        exit_code, output = response
        for line in output.splitlines():
            if on_line is not None:
                on_line(line)

        delay = self._delays.get(target, 0.0)
        cancelled = False
        if delay:
            if cancel is not None:
                cancelled = cancel.wait(delay)
            else:
                time.sleep(delay)

        end = time.monotonic()
        with self._lock:
            self.intervals[target] = (start, end)
        return InvocationResult(
            exit_code=-1 if cancelled else exit_code,
            output=output,
            duration=end - start,
            cancelled=cancelled,
        )


def write_files(root: Path, files: Dict[str, str]) -> Path:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def csproj(*references: str, test: bool = False) -> str:
    items = "".join(f'    <ProjectReference Include="{ref}" />\n' for ref in references)
    flag = "    <IsTestProject>true</IsTestProject>\n" if test else ""
    return (
        '<Project Sdk="Microsoft.NET.Sdk">\n'
        f"  <PropertyGroup>\n{flag}  </PropertyGroup>\n"
        f"  <ItemGroup>\n{items}  </ItemGroup>\n"
        "</Project>\n"
    )


FOO_TESTS = """using Xunit;

namespace Core.Tests
{
    public class FooTests
    {
        [Fact]
        public void Adds()
        {
        }
    }
}
"""

SOLUTION = """Microsoft Visual Studio Solution File, Format Version 12.00
Project("{FAE04EC0-301F-11D3-BF4B-00C04F79EFBC}") = "Core", "Core\\Core.csproj", "{11111111-1111-1111-1111-111111111111}"
EndProject
Project("{FAE04EC0-301F-11D3-BF4B-00C04F79EFBC}") = "Core.Tests", "Core.Tests\\Core.Tests.csproj", "{22222222-2222-2222-2222-222222222222}"
EndProject
"""


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def dotnet_repo(tmp_path: Path) -> Path:
    """Repository with ``Core``, ``Core.Tests`` (tests Core) and ``Tools`` (untested).

    Layout:
        Core/Core.csproj, Core/Foo.cs
        Core.Tests/Core.Tests.csproj, Core.Tests/FooTests.cs
        Tools/Tools.csproj, Tools/Cli.cs (depends on Core)
        App.sln (Core, Core.Tests)
    """
    root = tmp_path / "repo"
    return write_files(
        root,
        {
            "Core/Core.csproj": csproj(),
            "Core/Foo.cs": "namespace Core { public class Foo {} }\n",
            "Core.Tests/Core.Tests.csproj": csproj("..\\Core\\Core.csproj", test=True),
            "Core.Tests/FooTests.cs": FOO_TESTS,
            "Tools/Tools.csproj": csproj("..\\Core\\Core.csproj"),
            "Tools/Cli.cs": "namespace Tools { public class Cli {} }\n",
            "App.sln": SOLUTION,
            "README.md": "# App\n",
        },
    )


@pytest.fixture
def make_repo(tmp_path: Path):
    """Factory writing ``{relative path: content}`` under a fresh repo root."""

    def _make(files: Dict[str, str]) -> Path:
        return write_files(tmp_path / "repo", files)

    return _make
