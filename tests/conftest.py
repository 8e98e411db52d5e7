import collections
from unittest import mock

import pytest

from imgrow import imgrow as ig
from imgrow import build
from imgrow import engine as en
from imgrow import image as im


class Stub_Engine(en.Engine):
   """Engine double. Each call is recorded in calls as (method, args) and
      must match the next result scripted for that method with expect();
      unscripted calls fail the test. Pass mock.ANY for arguments that don’t
      matter.

      States are recorded as copies, so tests see what the instruction passed
      at call time. Uploaded streams are read to EOF and recorded as bytes."""

   def __init__(self):
      self.calls = list()
      self.script = collections.defaultdict(list)

   def expect(self, method, *args, result=None, error=None):
      self.script[method].append((args, result, error))
      return self

   def assert_done(self):
      left = { k: v for (k, v) in self.script.items() if len(v) > 0 }
      assert left == {}, "expected calls not made: %s" % left

   def calls_of(self, method):
      return [args for (m, args) in self.calls if m == method]

   def call(self, method, *args):
      args = tuple(a.copy() if isinstance(a, im.State) else a for a in args)
      self.calls.append((method, args))
      if (len(self.script[method]) == 0):
         raise AssertionError("unexpected call: %s%r" % (method, args))
      (want, result, error) = self.script[method].pop(0)
      assert len(want) == len(args), "%s: wrong argument count" % method
      for (w, a) in zip(want, args):
         assert w == a, "%s: expected %r, got %r" % (method, w, a)
      if (error is not None):
         raise error
      return result

   def container_commit(self, state, message):
      return self.call("container_commit", state, message)

   def container_create(self, state):
      return self.call("container_create", state)

   def container_remove(self, container_id):
      return self.call("container_remove", container_id)

   def container_run(self, container_id, attach):
      return self.call("container_run", container_id, attach)

   def container_upload(self, container_id, stream, dest):
      return self.call("container_upload", container_id, b"".join(stream),
                       dest)

   def image_inspect(self, name):
      return self.call("image_inspect", name)

   def image_pull(self, name):
      return self.call("image_pull", name)

   def image_tag(self, image_id, name):
      return self.call("image_tag", image_id, name)


def config_new(**kwargs):
   c = im.Container_Config()
   for (k, v) in kwargs.items():
      setattr(c, k, v)
   return c

def engine_error(msg="daemon says no"):
   return ig.Engine_Error(msg, None, None)


@pytest.fixture
def engine():
   e = Stub_Engine()
   yield e

@pytest.fixture
def build_new(engine):
   "Return a function making a Build over the stub engine."
   def new(state=None, **kwargs):
      return build.Build(build.Config(**kwargs), engine, state)
   return new
