# Implementation of "imgrow build".

import abc
import json
import os
import os.path
import posixpath
import re
import sys
import types

from imgrow import imgrow as ig
from imgrow import dockerfile as df
from imgrow import engine as en
from imgrow import filesystem as fs
from imgrow import image as im


## Main ##

def main(cli):

   # Infer input file if needed.
   if (cli.file is None):
      cli.file = os.path.join(cli.context, "Dockerfile")

   # Validate context directory. COPY is the only instruction that needs it,
   # but fail early rather than halfway through the build.
   if (not os.path.isdir(cli.context)):
      ig.FATAL("context must be a directory: %s" % cli.context)

   # Read input file.
   if (cli.file == "-"):
      text = ig.ossafe(sys.stdin.read, "can’t read stdin")
   else:
      fp = ig.ossafe(open, "can’t open: %s" % cli.file, cli.file, "rt")
      text = ig.ossafe(fp.read, "can’t read: %s" % cli.file)
      ig.ossafe(fp.close, "can’t close: %s" % cli.file)

   # Parse it.
   parse_start = ig.Timer()
   insts = [instruction_new(t) for t in df.parse(text, cli.file)]
   parse_start.log("parsed Dockerfile")
   if (len(insts) == 0):
      ig.FATAL("no instructions found: %s" % cli.file)
   if (not cli.no_auto_commit):
      insts = plan(insts)

   # If we only want to parse, stop here.
   if (cli.parse_only):
      for inst in insts:
         print(inst)
      return

   # Go!
   b = Build(Config(pull=cli.pull, cleanup=cli.cleanup, context=cli.context),
             en.Docker_Engine(cli.host))
   try:
      ml = Main_Loop(b)
      ml.run(insts)
      if (cli.tag is not None):
         if (b.state.dirty):
            ml.cleanup()
            ig.FATAL("--tag: uncommitted changes at end of build",
                     "add COMMIT at the end of the Dockerfile",
                     exc=ig.Precondition_Error)
         b.engine.image_tag(b.state.image_id, cli.tag)
   finally:
      b.engine.close()
   print(b.state.image_id)


## Classes ##

class Config:
   """Build-wide settings that instructions may consult but never change.

        pull ...... always pull FROM images, even if present locally
        cleanup ... ig.Cleanup_Mode for containers that won’t go away after
                    a successful commit
        context ... host directory COPY sources are relative to"""

   __slots__ = ("cleanup",
                "context",
                "pull")

   def __init__(self, pull=False, cleanup=ig.Cleanup_Mode.ERROR, context="."):
      self.cleanup = cleanup
      self.context = context
      self.pull = pull


class Build:
   """Context an instruction executes in: configuration, the daemon, and the
      build state so far.

      Instructions read the state through the state property, which hands
      out a private copy every time; only the driver installs a new state,
      via state_replace(). Thus an instruction can never observe or cause a
      partially-updated state, even if it fails halfway."""

   __slots__ = ("_state",
                "config",
                "engine")

   def __init__(self, config, engine, state=None):
      self.config = config
      self.engine = engine
      self._state = im.State() if state is None else state.copy()

   @property
   def state(self):
      return self._state.copy()

   def state_replace(self, state):
      assert isinstance(state, im.State)
      self._state = state.copy()


class Main_Loop:
   """Driver: execute instructions in order, installing each result as the
      current state. Stop at the first failure after removing any live
      container."""

   __slots__ = ("b",
                "instruction_total_ct")

   def __init__(self, b):
      self.b = b
      self.instruction_total_ct = 0

   def cleanup(self):
      "Remove the live container, if any. Best effort."
      s = self.b.state
      if (s.container_id == ""):
         return
      ig.INFO("removing uncommitted container: %s"
              % ig.short_id(s.container_id))
      if (container_remove_quietly(self.b.engine, s.container_id)):
         s.container_id = ""
         self.b.state_replace(s)

   def run(self, insts):
      for inst in insts:
         self.step(inst)
      ig.INFO("grown in %d instructions: %s"
              % (self.instruction_total_ct,
                 ig.short_id(self.b.state.image_id) or "no image"))

   def step(self, inst):
      if (self.b.state.image_id == "" and not isinstance(inst, I_from_)):
         ig.FATAL("%s: no image yet" % inst.str_name,
                  "first instruction must be FROM",
                  exc=ig.Precondition_Error)
      inst.announce()
      try:
         s = inst.execute(self.b)
      except (ig.Fatal_Error, KeyboardInterrupt):
         self.cleanup()
         raise
      self.b.state_replace(s)
      ig.DEBUG("state: %s" % s)
      self.instruction_total_ct += 1


## Instruction classes ##

class Instruction(abc.ABC):
   """One build step. Instances are immutable once constructed and know
      nothing about any build; execute() maps a build context to the next
      state, or raises ig.Fatal_Error.

      arg_ct is the (minimum, maximum) number of arguments; None means no
      maximum."""

   __slots__ = ("args",
                "attrs",
                "lineno")

   arg_ct = (0, None)

   def __init__(self, args=(), attrs=None, lineno=None):
      self.args = tuple(args)
      self.attrs = types.MappingProxyType(dict(attrs or {}))
      self.lineno = lineno

   @property
   def json_p(self):
      "True if arguments were given in exec (JSON list) form."
      return self.attrs.get("json", False)

   @property
   def str_(self):
      if (self.json_p):
         return json.dumps(list(self.args))
      else:
         return " ".join(self.args)

   @property
   def str_name(self):
      return self.__class__.__name__.split("_")[1].upper()

   def __repr__(self):
      return "%s(%r, %r, lineno=%r)" % (self.__class__.__name__, self.args,
                                        dict(self.attrs), self.lineno)

   def __str__(self):
      return ("%s %s" % (self.str_name, self.str_)).rstrip()

   def announce(self):
      lineno = "-" if self.lineno is None else self.lineno
      ig.INFO("%3s %s" % (lineno, self))

   def args_check(self):
      (min_, max_) = self.arg_ct
      if (len(self.args) < min_ or (max_ is not None and len(self.args) > max_)):
         if (max_ is None):
            expected = "at least %d" % min_
         elif (min_ == max_):
            expected = "%d" % min_
         else:
            expected = "%d to %d" % (min_, max_)
         self.fatal("wrong number of arguments; expected %s but got %d"
                    % (expected, len(self.args)))

   def execute(self, b):
      """Execute myself in build context b and return the resulting state.
         Fail with ig.Fatal_Error. Either way, b is not changed."""
      self.args_check()
      return self.apply(b, b.state)

   def fatal(self, msg, hint=None, exc=ig.Precondition_Error):
      ig.FATAL("%s: %s" % (self.str_name, msg), hint, exc=exc)

   def image_needed(self, s):
      if (s.image_id == ""):
         self.fatal("no image", "FROM first")

   def container_absent(self, s):
      if (s.container_id != ""):
         self.fatal("uncommitted container: %s" % ig.short_id(s.container_id),
                    "COMMIT first")

   @abc.abstractmethod
   def apply(self, b, s):
      """Return the state following s, which is my own copy to modify and
         return."""
      ...


class Instruction_Metadata(Instruction):
   # This is a class for instructions that change only the declared
   # configuration. They don’t touch the filesystem and don’t need a
   # container; they record themselves in the pending commit messages so the
   # next COMMIT preserves them.

   __slots__ = ()

   arg_ct = (1, None)

   def apply(self, b, s):
      self.config_update(s.config)
      s.commit_msg.append(str(self))
      return s

   @abc.abstractmethod
   def config_update(self, c):
      ...


class I_cmd(Instruction_Metadata):

   __slots__ = ()

   def config_update(self, c):
      c.cmd = argv_from_args(self.args, self.json_p)


class I_commit(Instruction):

   __slots__ = ()

   arg_ct = (0, 0)

   def apply(self, b, s):
      if (not s.dirty):
         self.fatal("Nothing to commit", exc=ig.Nothing_To_Commit_Error)
      message = "; ".join(s.commit_msg)
      created = False
      if (s.container_id == ""):
         # Metadata-only changes; the daemon can only commit a container, so
         # make one that does nothing.
         s.container_id = container_create_nop(b.engine, s, message)
         created = True
      try:
         image_id = b.engine.container_commit(s, message)
      except (ig.Fatal_Error, KeyboardInterrupt):
         if (created):
            container_remove_quietly(b.engine, s.container_id)
         raise
      container_id = s.container_id
      s.image_id = image_id
      s.container_id = ""
      s.commit_msg = list()
      s.config.cmd = None
      try:
         b.engine.container_remove(container_id)
      except ig.Fatal_Error as x:
         msg = ("image %s committed but can’t remove container %s: %s"
                % (ig.short_id(image_id), ig.short_id(container_id), x))
         if (b.config.cleanup == ig.Cleanup_Mode.WARN):
            ig.WARNING("%s: %s" % (self.str_name, msg))
         else:
            self.fatal(msg, "remove the container by hand, or use --cleanup=warn",
                       exc=ig.Cleanup_Error)
      return s


class I_copy(Instruction):

   __slots__ = ()

   arg_ct = (2, None)

   def apply(self, b, s):
      self.image_needed(s)
      dst = self.args[-1]
      srcs = [fs.source_resolve(b.config.context, i) for i in self.args[:-1]]
      dsts = [fs.copy_dest(i, dst, len(srcs) > 1) for i in srcs]
      created = False
      if (s.container_id == ""):
         s.container_id = container_create_nop(b.engine, s, str(self))
         created = True
      try:
         for (src, dst) in zip(srcs, dsts):
            ig.VERBOSE("copying: %s -> %s" % (src, dst))
            archive_upload(b.engine, s.container_id, src, dst)
      except (ig.Fatal_Error, KeyboardInterrupt):
         if (created):
            container_remove_quietly(b.engine, s.container_id)
         raise
      return s


class I_entrypoint(Instruction_Metadata):

   __slots__ = ()

   def config_update(self, c):
      c.entrypoint = argv_from_args(self.args, self.json_p)


class I_env(Instruction_Metadata):

   __slots__ = ()

   arg_ct = (2, None)

   @property
   def pairs(self):
      return list(zip(self.args[0::2], self.args[1::2]))

   @property
   def str_(self):
      return " ".join("%s=%s" % (k, v) for (k, v) in self.pairs)

   def args_check(self):
      super().args_check()
      if (len(self.args) % 2 != 0):
         self.fatal("odd number of arguments; expected KEY VALUE pairs")

   def config_update(self, c):
      c.env = env_merge(c.env, self.pairs)


class I_expose(Instruction_Metadata):

   __slots__ = ()

   def config_update(self, c):
      for port in self.args:
         if (not re.fullmatch(r"[0-9]+(-[0-9]+)?(/(tcp|udp|sctp))?", port)):
            self.fatal("invalid port: %s" % port)
         if ("/" not in port):
            port += "/tcp"
         c.exposed_ports[port] = dict()


class I_from_(Instruction):

   __slots__ = ()

   arg_ct = (1, 1)

   def apply(self, b, s):
      self.container_absent(s)
      ref = self.args[0]
      pulled = False
      if (b.config.pull):
         b.engine.image_pull(ref)
         pulled = True
      img = b.engine.image_inspect(ref)
      if (img is None and not pulled):
         ig.VERBOSE("image not found locally: %s" % ref)
         b.engine.image_pull(ref)
         img = b.engine.image_inspect(ref)
      if (img is None):
         self.fatal("Failed to inspect image after pull: %s" % ref,
                    exc=ig.Resolve_Error)
      ig.VERBOSE("base image: %s" % ig.short_id(img.id_))
      # Nothing carries over from before, including pending messages.
      return im.State(image_id=img.id_, config=img.config.copy())


class I_label(Instruction_Metadata):

   __slots__ = ()

   arg_ct = (2, None)

   @property
   def str_(self):
      return " ".join("%s=%s" % (k, v)
                      for (k, v) in zip(self.args[0::2], self.args[1::2]))

   def args_check(self):
      super().args_check()
      if (len(self.args) % 2 != 0):
         self.fatal("odd number of arguments; expected KEY VALUE pairs")

   def config_update(self, c):
      c.labels.update(zip(self.args[0::2], self.args[1::2]))


class I_maintainer(Instruction_Metadata):

   __slots__ = ()

   def config_update(self, c):
      c.labels["maintainer"] = " ".join(self.args)


class I_run(Instruction):

   __slots__ = ()

   arg_ct = (1, None)

   def apply(self, b, s):
      self.image_needed(s)
      self.container_absent(s)
      run = s.copy()
      run.config.cmd = argv_from_args(self.args, self.json_p)
      container_id = b.engine.container_create(run)
      try:
         b.engine.container_run(container_id, False)
      except (ig.Fatal_Error, KeyboardInterrupt):
         container_remove_quietly(b.engine, container_id)
         raise
      # The command is only for this container; s keeps the declared one.
      s.container_id = container_id
      return s


class I_tag(Instruction):

   __slots__ = ()

   arg_ct = (1, 1)

   def apply(self, b, s):
      self.image_needed(s)
      if (s.dirty):
         self.fatal("uncommitted changes", "COMMIT first")
      b.engine.image_tag(s.image_id, self.args[0])
      return s


class I_user(Instruction_Metadata):

   __slots__ = ()

   arg_ct = (1, 1)

   def config_update(self, c):
      c.user = self.args[0]


class I_workdir(Instruction_Metadata):

   __slots__ = ()

   arg_ct = (1, 1)

   def config_update(self, c):
      c.workdir = posixpath.normpath(posixpath.join(c.workdir or "/",
                                                    self.args[0]))


## Supporting functions ##

def archive_upload(engine, container_id, src, dst):
   """Stream a tar archive of host path src into the container so it lands at
      absolute path dst. A producer thread writes the archive into a bounded
      pipe while the engine reads it, so the archive is never held in memory
      whole. Archive member names are relative to the container’s root."""
   pipe = fs.Pipe()
   producer = fs.Tar_Producer(pipe, src, posixpath.relpath(dst, "/"))
   producer.start()
   try:
      engine.container_upload(container_id, pipe, dst)
   finally:
      # If the upload stopped early, this unblocks the producer.
      pipe.close()
      producer.join()
   if (producer.error is not None):
      raise producer.error
   ig.VERBOSE("copied %d bytes: %s" % (pipe.read_ct, src))

def argv_from_args(args, json_p):
   "Return the command to run for arguments args, in exec or shell form."
   if (json_p):
      return list(args)
   else:
      return ig.SHELL + [" ".join(args)]

def container_create_nop(engine, s, what):
   """Create a container from s whose command only documents what; return its
      ID. s itself is not changed, so its declared command is what a later
      commit records."""
   nop = s.copy()
   nop.config.cmd = ig.SHELL + ["#(nop) %s" % what]
   return engine.container_create(nop)

def container_remove_quietly(engine, container_id):
   """Try to remove the container. On failure, warn and return False rather
      than raising, because we are usually already handling an error."""
   try:
      engine.container_remove(container_id)
      return True
   except ig.Fatal_Error as x:
      ig.WARNING("can’t remove container %s: %s"
                 % (ig.short_id(container_id), x))
      return False

def env_merge(env, pairs):
   """Return a new environment list: env, a list of "KEY=VALUE" strings, with
      pairs applied. Existing keys keep their position; new keys are appended
      in first-seen order. If a key repeats in pairs, the last value wins."""
   new = dict()
   for (k, v) in pairs:
      new[k] = v
   out = list()
   for kv in env:
      k = kv.partition("=")[0]
      if (k in new):
         out.append("%s=%s" % (k, new.pop(k)))
      else:
         out.append(kv)
   out += ["%s=%s" % (k, v) for (k, v) in new.items()]
   return out

def instruction_new(text):
   "Return the instruction object for parser output text."
   name = text.name.lower()
   for class_ in ("I_" + name, "I_" + name + "_"):
      if (class_ in globals()):
         return globals()[class_](text.args, text.attrs, text.lineno)
   ig.FATAL("%s: unknown instruction: %s" % (text.lineno, text.name))

def plan(insts):
   """Return insts with COMMIT inserted where the build needs one and the
      Dockerfile didn’t say so. A live container is committed before the next
      RUN; anything pending is committed before FROM and TAG, and at the end.
      COPY after COPY or RUN reuses the live container, so they share a
      layer."""
   out = list()
   container = False  # live container pending
   metadata = False   # metadata changes pending
   def commit():
      nonlocal container, metadata
      if (container or metadata):
         out.append(I_commit())
      container = False
      metadata = False
   for inst in insts:
      if (isinstance(inst, (I_from_, I_tag))):
         commit()
      elif (isinstance(inst, I_run) and container):
         commit()
      out.append(inst)
      if (isinstance(inst, I_commit)):
         container = False
         metadata = False
      elif (isinstance(inst, (I_copy, I_run))):
         container = True
      elif (isinstance(inst, Instruction_Metadata)):
         metadata = True
   commit()
   return out
