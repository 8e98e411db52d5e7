import atexit
import sys

import pytest

from imgrow import imgrow as ig
from imgrow import build
from imgrow import cli
from imgrow import version


class Stderr_Current:
   "Log file that writes to whatever sys.stderr is at the moment of use."

   def __getattr__(self, name):
      return getattr(sys.stderr, name)


@pytest.fixture
def clean_env(monkeypatch):
   for var in ("DOCKER_HOST", "IMGROW_CLEANUP", "IMGROW_DEBUG",
               "IMGROW_LOG_FESTOON", "IMGROW_LOG_FILE", "IMGROW_PULL"):
      monkeypatch.delenv(var, raising=False)
   # log to stderr as captured during the test, not as it was at setup, and
   # don’t leave color resets for exit time
   monkeypatch.setattr(ig, "log_fp", Stderr_Current())
   monkeypatch.setattr(atexit, "register", lambda *args: None)
   yield monkeypatch
   ig.verbose = 0
   ig.log_quiet = 0
   ig.trace_fatal = False

@pytest.fixture
def captured(clean_env):
   "Replace build.main with a function that records the parsed arguments."
   got = list()
   clean_env.setattr(build, "main", lambda args: got.append(args))
   return got


def test_version(capsys):
   with pytest.raises(SystemExit) as x:
      cli.main(["--version"])
   assert x.value.code == 0
   assert capsys.readouterr().out.strip() == version.VERSION

def test_no_args():
   with pytest.raises(SystemExit) as x:
      cli.main([])
   assert x.value.code == 1

def test_defaults(captured, tmp_path):
   with pytest.raises(SystemExit) as x:
      cli.main(["build", str(tmp_path)])
   assert x.value.code == 0
   args = captured[0]
   assert args.context == str(tmp_path)
   assert args.pull is False
   assert args.cleanup == ig.Cleanup_Mode.ERROR
   assert args.host == ig.DOCKER_HOST_DEFAULT
   assert args.file is None
   assert args.tag is None

def test_environment(captured, clean_env, tmp_path):
   clean_env.setenv("IMGROW_PULL", "yes")
   clean_env.setenv("IMGROW_CLEANUP", "warn")
   clean_env.setenv("DOCKER_HOST", "tcp://10.0.0.1:2375")
   with pytest.raises(SystemExit):
      cli.main(["build", str(tmp_path)])
   args = captured[0]
   assert args.pull is True
   assert args.cleanup == ig.Cleanup_Mode.WARN
   assert args.host == "tcp://10.0.0.1:2375"

def test_options_beat_environment(captured, clean_env, tmp_path):
   clean_env.setenv("IMGROW_CLEANUP", "warn")
   clean_env.setenv("DOCKER_HOST", "tcp://10.0.0.1:2375")
   with pytest.raises(SystemExit):
      cli.main(["-vv", "build", "--cleanup", "error", "-H", "http://h:1",
                "-t", "x:1", "-f", "Other", str(tmp_path)])
   args = captured[0]
   assert args.cleanup == ig.Cleanup_Mode.ERROR
   assert args.host == "http://h:1"
   assert args.tag == "x:1"
   assert args.file == "Other"
   assert ig.verbose == 2

def test_bad_cleanup_env(captured, clean_env, tmp_path, capsys):
   clean_env.setenv("IMGROW_CLEANUP", "maybe")
   with pytest.raises(SystemExit) as x:
      cli.main(["build", str(tmp_path)])
   assert x.value.code == 1
   assert captured == []
   assert "IMGROW_CLEANUP" in capsys.readouterr().err

def test_parse_only(clean_env, tmp_path, capsys):
   (tmp_path / "Dockerfile").write_text("FROM alpine\nRUN make\nENV a=1\n")
   with pytest.raises(SystemExit) as x:
      cli.main(["-q", "build", "--parse-only", str(tmp_path)])
   assert x.value.code == 0
   assert capsys.readouterr().out.splitlines() \
          == ["FROM alpine", "RUN make", "ENV a=1", "COMMIT"]

def test_parse_only_no_auto_commit(clean_env, tmp_path, capsys):
   (tmp_path / "Dockerfile").write_text("FROM alpine\nRUN make\n")
   with pytest.raises(SystemExit):
      cli.main(["-q", "build", "--parse-only", "--no-auto-commit",
                str(tmp_path)])
   assert capsys.readouterr().out.splitlines() == ["FROM alpine", "RUN make"]

def test_parse_error_exits(clean_env, tmp_path, capsys):
   (tmp_path / "Dockerfile").write_text("FROB alpine\n")
   with pytest.raises(SystemExit) as x:
      cli.main(["build", "--parse-only", str(tmp_path)])
   assert x.value.code == 1
   assert "can’t parse" in capsys.readouterr().err

def test_missing_context(clean_env, tmp_path, capsys):
   with pytest.raises(SystemExit) as x:
      cli.main(["build", str(tmp_path / "nope")])
   assert x.value.code == 1
   assert "context must be a directory" in capsys.readouterr().err
