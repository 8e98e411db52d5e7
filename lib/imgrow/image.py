import copy

from imgrow import imgrow as ig


## Constants ##

# Container configuration fields we interpret, mapped from our attribute names
# to the keys the daemon uses in its JSON. Anything else in an image’s config
# is carried along untouched in Container_Config.extra.
CONFIG_KEYS = { "cmd":           "Cmd",
                "entrypoint":    "Entrypoint",
                "env":           "Env",
                "exposed_ports": "ExposedPorts",
                "hostname":      "Hostname",
                "labels":        "Labels",
                "user":          "User",
                "workdir":       "WorkingDir" }


## Classes ##

class Container_Config:
   """Declared configuration of a container, i.e. what a commit freezes into
      the image alongside the filesystem. Types:

        cmd ............. list of str, or None if not set
        entrypoint ...... list of str, or None if not set
        env ............. list of "KEY=VALUE" str; keys unique
        exposed_ports ... dict, keys like "80/tcp", values empty dicts
        hostname ........ str
        labels .......... dict of str
        user ............ str
        workdir ......... str
        extra ........... dict of daemon fields we pass through verbatim"""

   __slots__ = ("cmd",
                "entrypoint",
                "env",
                "exposed_ports",
                "extra",
                "hostname",
                "labels",
                "user",
                "workdir")

   def __init__(self):
      self.cmd = None
      self.entrypoint = None
      self.env = list()
      self.exposed_ports = dict()
      self.extra = dict()
      self.hostname = ""
      self.labels = dict()
      self.user = ""
      self.workdir = ""

   def __eq__(self, other):
      return (    isinstance(other, Container_Config)
              and self.as_json() == other.as_json())

   def __repr__(self):
      return "%s(%s)" % (self.__class__.__name__, self.as_json())

   @classmethod
   def from_json(class_, d):
      """Return a new config built from daemon JSON dict d, which may be None
         (e.g. images with no config at all)."""
      c = class_()
      if (d is None):
         return c
      d = copy.deepcopy(d)
      for (attr, key) in CONFIG_KEYS.items():
         v = d.pop(key, None)
         if (v is not None):
            setattr(c, attr, v)
      c.extra = d
      return c

   def as_json(self):
      d = copy.deepcopy(self.extra)
      for (attr, key) in CONFIG_KEYS.items():
         d[key] = copy.deepcopy(getattr(self, attr))
      return d

   def copy(self):
      "Return an independent copy of myself."
      return copy.deepcopy(self)


class Image_Info:
   """What the daemon tells us about an existing image: its ID and the
      container configuration it declares."""

   __slots__ = ("config",
                "id_")

   def __init__(self, id_, config=None):
      self.id_ = id_
      if (config is None):
         config = Container_Config()
      self.config = config

   def __repr__(self):
      return "Image_Info(%s)" % ig.short_id(self.id_)


class State:
   """Build progress threaded through instruction execution. This is a value:
      instructions receive a copy and return a new one, and nothing else may
      hold a reference to the driver’s copy.

        image_id ....... most recent image produced or inspected; "" if none
        container_id ... live, uncommitted container; "" if none
        config ......... Container_Config declared so far
        commit_msg ..... metadata-only changes since the last commit"""

   __slots__ = ("commit_msg",
                "config",
                "container_id",
                "image_id")

   def __init__(self, image_id="", container_id="", config=None,
                      commit_msg=None):
      self.image_id = image_id
      self.container_id = container_id
      self.config = Container_Config() if config is None else config
      self.commit_msg = list() if commit_msg is None else commit_msg

   def __eq__(self, other):
      return (    isinstance(other, State)
              and self.image_id == other.image_id
              and self.container_id == other.container_id
              and self.config == other.config
              and self.commit_msg == other.commit_msg)

   def __repr__(self):
      return ("State(image=%s, container=%s, commit_msg=%s, config=%s)"
              % (ig.short_id(self.image_id) or "-",
                 ig.short_id(self.container_id) or "-",
                 self.commit_msg, self.config))

   @property
   def dirty(self):
      "True if there is anything a commit would preserve."
      return (self.container_id != "" or len(self.commit_msg) > 0)

   def copy(self):
      "Return an independent copy of myself."
      return copy.deepcopy(self)
