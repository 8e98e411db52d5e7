# Command line entry point, "imgrow".

import argparse
import sys

from imgrow import imgrow as ig
from imgrow import build
from imgrow import version


## Classes ##

class Action_Exit(argparse.Action):

   def __init__(self, *args, **kwargs):
      super().__init__(nargs=0, *args, **kwargs)

class Version(Action_Exit):

   def __call__(self, *args, **kwargs):
      print(version.VERSION)
      sys.exit(0)


## Main ##

def main(argv=None):
   ap = ig.ArgumentParser(
      sub_title="subcommands", sub_metavar="CMD",
      description="Build container images from Dockerfiles using a Docker daemon.",
      epilog="""\
environment variables:
  DOCKER_HOST           daemon address for --host (default: %s)
  IMGROW_PULL           default for --pull if set to "yes"
  IMGROW_CLEANUP        default for --cleanup
  IMGROW_DEBUG          same as --debug if set
  IMGROW_LOG_FESTOON    prepend PID and timestamp to log lines if set
  IMGROW_LOG_FILE       append log to this file instead of stderr
""" % ig.DOCKER_HOST_DEFAULT)

   # Common options.
   ap.add_argument("--debug", action="store_true",
                   help="add short traceback to fatal error hints")
   ap.add_argument("-q", "--quiet", action="count", default=0,
                   help="print less output (can be repeated)")
   ap.add_argument("-v", "--verbose", action="count", default=0,
                   help="print extra chatter (can be repeated)")
   ap.add_argument("--version", action=Version,
                   help="print version and exit")

   # build
   sp = ap.add_parser("build", "build image from Dockerfile")
   sp.set_defaults(func=build.main)
   sp.add_argument("--cleanup", metavar="{error,warn}", type=ig.Cleanup_Mode,
                   help="on failure to remove a committed container: fail (default) or warn and continue")
   sp.add_argument("-f", "--file", metavar="FILE",
                   help="Dockerfile to use (default: CONTEXT/Dockerfile)")
   sp.add_argument("-H", "--host", metavar="URL",
                   help="daemon address (default: $DOCKER_HOST or %s)"
                        % ig.DOCKER_HOST_DEFAULT)
   sp.add_argument("--no-auto-commit", action="store_true",
                   help="commit only where Dockerfile says COMMIT")
   sp.add_argument("--parse-only", action="store_true",
                   help="stop after parsing; print the instructions to run")
   sp.add_argument("--pull", action="store_true", default=None,
                   help="always pull FROM images, even if present")
   sp.add_argument("-t", "--tag", metavar="TAG",
                   help="name for the final image")
   sp.add_argument("context", metavar="CONTEXT",
                   help="context directory")

   if (argv is None):
      argv = sys.argv[1:]
   if (len(argv) < 1):
      ap.print_help(file=sys.stderr)
      ig.exit(1)

   try:
      cli = ap.parse_args(argv)
      if (not hasattr(cli, "func")):
         ap.print_help(file=sys.stderr)
         ig.exit(1)
      ig.init(cli)
      ig.VERBOSE("args: %s" % ig.argv_to_string(argv))
      cli.func(cli)
   except ig.Fatal_Error as x:
      ig.ERROR(*x.args, **x.kwargs)
      ig.exit(1)
   except KeyboardInterrupt:
      ig.ERROR("interrupted")
      ig.exit(1)
   ig.exit(0)


## Bootstrap ##

if (__name__ == "__main__"):
   main()
