import io
import os
import stat
import tarfile
import threading
import time

import pytest

from imgrow import imgrow as ig
from imgrow import filesystem as fs


def wait_for(pred, timeout=5):
   "Wait until pred() is true, failing the test if that takes too long."
   end = time.monotonic() + timeout
   while (not pred()):
      assert time.monotonic() < end, "timed out"
      time.sleep(0.01)


## Pipe ##

def test_pipe_read_write():
   p = fs.Pipe(capacity=16)
   assert p.write(b"hello") == 5
   assert p.read(3) == b"hel"
   assert p.read() == b"lo"
   p.close_write()
   assert p.read() == b""
   assert p.read(10) == b""
   assert p.read_ct == 5

def test_pipe_write_blocks_when_full():
   p = fs.Pipe(capacity=4)
   t = threading.Thread(target=p.write, args=(b"0123456789",), daemon=True)
   t.start()
   wait_for(lambda: len(p.buf) == 4)
   time.sleep(0.05)
   assert t.is_alive()
   assert len(p.buf) == 4   # never more than capacity
   assert p.read() == b"0123"
   wait_for(lambda: len(p.buf) == 4)
   assert p.read() == b"4567"
   t.join(5)
   assert not t.is_alive()
   assert p.read() == b"89"

def test_pipe_stream_bounded():
   data = os.urandom(100_000)
   p = fs.Pipe(capacity=1000)
   def produce():
      for i in range(0, len(data), 777):
         p.write(data[i:i+777])
      p.close_write()
   t = threading.Thread(target=produce, daemon=True)
   t.start()
   chunks = list()
   for chunk in p:
      assert len(p.buf) <= 1000
      chunks.append(chunk)
   t.join(5)
   assert b"".join(chunks) == data
   assert max(len(c) for c in chunks) <= 1000

def test_pipe_read_blocks_when_empty():
   p = fs.Pipe(capacity=4)
   got = list()
   t = threading.Thread(target=lambda: got.append(p.read()), daemon=True)
   t.start()
   time.sleep(0.05)
   assert t.is_alive()
   p.write(b"x")
   t.join(5)
   assert got == [b"x"]

def test_pipe_close_unblocks_writer():
   p = fs.Pipe(capacity=4)
   errors = list()
   def write():
      try:
         p.write(b"0123456789")
      except BrokenPipeError as x:
         errors.append(x)
   t = threading.Thread(target=write, daemon=True)
   t.start()
   wait_for(lambda: len(p.buf) == 4)
   p.close()
   t.join(5)
   assert not t.is_alive()
   assert len(errors) == 1
   assert p.read() == b""

def test_pipe_close_unblocks_reader():
   p = fs.Pipe(capacity=4)
   got = list()
   t = threading.Thread(target=lambda: got.append(p.read()), daemon=True)
   t.start()
   time.sleep(0.05)
   p.close()
   t.join(5)
   assert got == [b""]

def test_pipe_write_after_close_write():
   p = fs.Pipe()
   p.close_write()
   with pytest.raises(ValueError):
      p.write(b"x")


## Tar_Producer ##

def test_producer(tmp_path):
   (tmp_path / "a.txt").write_text("hello")
   p = fs.Pipe(capacity=1024)
   t = fs.Tar_Producer(p, str(tmp_path / "a.txt"), "b.txt")
   t.start()
   data = b"".join(p)
   t.join(5)
   assert t.error is None
   with tarfile.open(fileobj=io.BytesIO(data)) as tf:
      ti = tf.getmember("b.txt")
      assert (ti.uid, ti.gid) == (0, 0)
      assert tf.extractfile(ti).read() == b"hello"

def test_producer_strips_setuid(tmp_path):
   f = tmp_path / "suid"
   f.write_text("x")
   os.chmod(f, 0o4755)
   p = fs.Pipe()
   t = fs.Tar_Producer(p, str(f), "suid")
   t.start()
   data = b"".join(p)
   t.join(5)
   with tarfile.open(fileobj=io.BytesIO(data)) as tf:
      assert not (tf.getmember("suid").mode & stat.S_ISUID)

def test_producer_missing_source(tmp_path):
   p = fs.Pipe()
   t = fs.Tar_Producer(p, str(tmp_path / "nope"), "nope")
   t.start()
   b"".join(p)
   t.join(5)
   assert isinstance(t.error, ig.Fatal_Error)
   assert "can’t archive" in str(t.error)

def test_producer_cancelled(tmp_path):
   (tmp_path / "big").write_bytes(os.urandom(64 * 1024))
   p = fs.Pipe(capacity=1024)
   t = fs.Tar_Producer(p, str(tmp_path / "big"), "big")
   t.start()
   wait_for(lambda: len(p.buf) == 1024)
   p.close()   # consumer gives up
   t.join(5)
   assert not t.is_alive()
   assert "cancelled" in str(t.error)


## Paths ##

def test_copy_dest(tmp_path):
   (tmp_path / "f").write_text("f")
   (tmp_path / "d").mkdir()
   f = str(tmp_path / "f")
   d = str(tmp_path / "d")
   assert fs.copy_dest(f, "/file.txt", False) == "/file.txt"
   assert fs.copy_dest(f, "/srv/", False) == "/srv/f"
   assert fs.copy_dest(f, "srv/", True) == "/srv/f"
   assert fs.copy_dest(f, "/a/../b", False) == "/b"
   assert fs.copy_dest(d, "/app/", False) == "/app"
   assert fs.copy_dest(d, "/app", False) == "/app"
   assert fs.copy_dest(d, "/", False) == "/"
   with pytest.raises(ig.Precondition_Error):
      fs.copy_dest(f, "/srv", True)

def test_source_resolve(tmp_path):
   (tmp_path / "ctx").mkdir()
   (tmp_path / "ctx" / "f").write_text("f")
   (tmp_path / "outside").write_text("o")
   os.symlink(str(tmp_path / "outside"), str(tmp_path / "ctx" / "link"))
   ctx = str(tmp_path / "ctx")
   assert fs.source_resolve(ctx, "f") == os.path.realpath(str(tmp_path / "ctx" / "f"))
   assert fs.source_resolve(ctx, "./f") == fs.source_resolve(ctx, "f")
   with pytest.raises(ig.Precondition_Error):
      fs.source_resolve(ctx, "../outside")
   with pytest.raises(ig.Precondition_Error):
      fs.source_resolve(ctx, "link")
   with pytest.raises(ig.Precondition_Error):
      fs.source_resolve(ctx, "missing")
