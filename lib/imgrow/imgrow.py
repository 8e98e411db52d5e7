import argparse
import atexit
import datetime
import enum
import os
import shlex
import sys
import time
import traceback

from imgrow import version


## Enums ##

# What to do when removing a container fails after its commit succeeded.
class Cleanup_Mode(enum.Enum):
   ERROR = "error"
   WARN = "warn"


## Constants ##

# Default daemon address. The Docker daemon must listen on TCP for us; we
# don’t speak HTTP over Unix sockets.
DOCKER_HOST_DEFAULT = "tcp://127.0.0.1:2375"

# Chunk size in bytes when streaming HTTP bodies in either direction.
HTTP_CHUNK_SIZE = 256 * 1024

# Shell used to wrap shell-form commands.
SHELL = ["/bin/sh", "-c"]


## Globals ##

# Logging; set using init() below.
verbose = 0          # Verbosity level.
log_quiet = 0        # If positive, suppress INFO.
log_festoon = False  # If true, prepend pid and timestamp to chatter.
log_fp = sys.stderr  # File object to print logs to.
trace_fatal = False  # Add abbreviated traceback to fatal error hint.


## Exceptions ##

class Fatal_Error(Exception):
   def __init__(self, *args, **kwargs):
      self.args = args
      self.kwargs = kwargs

   def __str__(self):
      return str(self.args[0])

class Cleanup_Error(Fatal_Error): pass
class Engine_Error(Fatal_Error): pass
class Nothing_To_Commit_Error(Fatal_Error): pass
class Precondition_Error(Fatal_Error): pass
class Resolve_Error(Fatal_Error): pass


## Classes ##

class ArgumentParser(argparse.ArgumentParser):

   class HelpFormatter(argparse.RawDescriptionHelpFormatter):

      # Suppress duplicate metavar printing when option has both short and
      # long flavors. E.g., instead of:
      #
      #   -f FILE, --file FILE  Dockerfile to use
      #
      # print:
      #
      #   -f, --file FILE       Dockerfile to use
      def _format_action_invocation(self, action):
         if (not action.option_strings or action.nargs == 0):
            return super()._format_action_invocation(action)
         default = self._get_default_metavar_for_optional(action)
         args_string = self._format_args(action, default)
         return ', '.join(action.option_strings) + ' ' + args_string

   def __init__(self, sub_title=None, sub_metavar=None, *args, **kwargs):
      super().__init__(formatter_class=self.HelpFormatter, *args, **kwargs)
      self._optionals.title = "options"
      if (sub_title is not None):
         self.subs = self.add_subparsers(title=sub_title, metavar=sub_metavar)

   def add_parser(self, title, desc, *args, **kwargs):
      return self.subs.add_parser(title, help=desc, description=desc,
                                  *args, **kwargs)

   def parse_args(self, *args, **kwargs):
      cli = super().parse_args(*args, **kwargs)
      # Bring in environment variables that set options. Only subcommands
      # that build have these attributes.
      if (getattr(cli, "pull", True) is None):
         cli.pull = (os.environ.get("IMGROW_PULL", "no") == "yes")
      if (hasattr(cli, "cleanup") and cli.cleanup is None):
         try:
            cli.cleanup = Cleanup_Mode(os.environ.get("IMGROW_CLEANUP",
                                                      "error"))
         except ValueError:
            FATAL("$IMGROW_CLEANUP: invalid cleanup mode: %s"
                  % os.environ["IMGROW_CLEANUP"])
      if (getattr(cli, "host", True) is None):
         cli.host = os.environ.get("DOCKER_HOST", DOCKER_HOST_DEFAULT)
      return cli


class Timer:

   __slots__ = ("start")

   def __init__(self):
      self.start = time.time()

   def log(self, msg):
      VERBOSE("%s in %.3fs" % (msg, time.time() - self.start))


## Supporting functions ##

def DEBUG(msg, hint=None, **kwargs):
   if (verbose >= 2):
      log(msg, hint, None, "38;5;6m", "", **kwargs)  # dark cyan (same as 36m)

def ERROR(msg, hint=None, trace=None, **kwargs):
   log(msg, hint, trace, "1;31m", "error: ", **kwargs)  # bold red

def FATAL(msg, hint=None, exc=Fatal_Error, **kwargs):
   if (trace_fatal):
      # One-line traceback, skipping top entry (which is always bootstrap code
      # calling imgrow.cli.main()) and last entry (this function).
      tr = ", ".join("%s:%d:%s" % (os.path.basename(f.filename),
                                   f.lineno, f.name)
                     for f in reversed(traceback.extract_stack()[1:-1]))
   else:
      tr = None
   raise exc(msg, hint, tr, **kwargs)

def INFO(msg, hint=None, **kwargs):
   "Note: Use print() for output; this function is for logging."
   if (log_quiet == 0):
      log(msg, hint, None, "33m", "", **kwargs)  # yellow

def TRACE(msg, hint=None, **kwargs):
   if (verbose >= 3):
      log(msg, hint, None, "38;5;6m", "", **kwargs)  # dark cyan (same as 36m)

def VERBOSE(msg, hint=None, **kwargs):
   if (verbose >= 1):
      log(msg, hint, None, "38;5;14m", "", **kwargs)  # light cyan (1;36m, not bold)

def WARNING(msg, hint=None, **kwargs):
   if (log_quiet < 2):
      log(msg, hint, None, "31m", "warning: ", **kwargs)  # red

def argv_to_string(argv):
   return " ".join(shlex.quote(i).replace("\n", "\\n") for i in argv)

def color_reset(*fps):
   for fp in fps:
      color_set("0m", fp)

def color_set(color, fp):
   if (fp.isatty()):
      print("\033[" + color, end="", flush=True, file=fp)

def exit(code):
   sys.exit(code)

def init(cli):
   # logging
   global log_festoon, log_fp, log_quiet, trace_fatal, verbose
   log_quiet = cli.quiet
   verbose = min(cli.verbose, 3)
   trace_fatal = (cli.debug or bool(os.environ.get("IMGROW_DEBUG", False)))
   if ((trace_fatal) and (log_quiet > 0)):
      log_quiet = 0
      trace_fatal = False
      FATAL("“debug” and “quiet” incompatible.")
   if ("IMGROW_LOG_FESTOON" in os.environ):
      log_festoon = True
   file_ = os.getenv("IMGROW_LOG_FILE")
   if (file_ is not None):
      verbose = max(verbose, 1)
      log_fp = ossafe(open, "can’t open log file: %s" % file_, file_, "at")
   atexit.register(color_reset, log_fp)
   VERBOSE("version: %s" % version.VERSION)
   VERBOSE("verbose level: %d" % verbose)

def log(msg, hint, trace, color, prefix, end="\n"):
   if (color is not None):
      color_set(color, log_fp)
   if (log_festoon):
      ts = datetime.datetime.now().isoformat(timespec="milliseconds")
      festoon = ("%5d %s  " % (os.getpid(), ts))
   else:
      festoon = ""
   print(festoon, prefix, msg, sep="", file=log_fp, end=end, flush=True)
   if (hint is not None):
      print(festoon, "hint: ", hint, sep="", file=log_fp, flush=True)
   if (trace is not None):
      print(festoon, "trace: ", trace, sep="", file=log_fp, flush=True)
   if (color is not None):
      color_reset(log_fp)

def ossafe(f, msg, *args, **kwargs):
   """Call f with args and kwargs. Catch OSError and other problems and fail
      with a nice error message."""
   try:
      return f(*args, **kwargs)
   except OSError as x:
      FATAL("%s: %s" % (msg, x.strerror))

def short_id(id_):
   "Return the first 12 hex digits of an image or container ID."
   if (id_ is None):
      return None
   if (id_.startswith("sha256:")):
      id_ = id_[7:]
   return id_[:12]
