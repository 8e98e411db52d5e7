import abc
import json
import struct
import sys
import urllib.parse

import requests
import requests.exceptions

from imgrow import imgrow as ig
from imgrow import image as im


## Constants ##

# Docker Engine API version we speak. 1.24 is old enough for any daemon still
# in service and has everything we need.
API_VERSION = "1.24"

# Stream types in the multiplexed container log stream.
STREAM_STDOUT = 1
STREAM_STDERR = 2


## Classes ##

class Engine(abc.ABC):
   """Boundary over the container daemon. Instructions talk to the daemon
      only through these methods, so anything implementing them (e.g., a
      stub in the tests) can stand in for a real daemon.

      Every method either succeeds or raises ig.Engine_Error. Note that
      image_inspect() reports a missing image by returning None, which is a
      success."""

   __slots__ = ()

   @abc.abstractmethod
   def container_commit(self, state, message):
      """Commit state.container_id with state.config; return the new image ID.
         If the config has neither command nor entrypoint, the new image
         keeps the command of its parent, state.image_id."""
      ...

   @abc.abstractmethod
   def container_create(self, state):
      """Create a container from state.image_id configured by state.config;
         return its ID. The container is not started."""
      ...

   @abc.abstractmethod
   def container_remove(self, container_id):
      ...

   @abc.abstractmethod
   def container_run(self, container_id, attach):
      """Start the container and wait for it to exit. If attach, relay its
         output as it runs. Non-zero exit is an error."""
      ...

   @abc.abstractmethod
   def container_upload(self, container_id, stream, dest):
      """Upload tar archive stream into the container so that it lands at
         absolute path dest. The archive’s top-level entry is dest relative
         to the root, or “.” if dest is the root, and it is extracted at the
         root; thus missing parent directories of dest are created. stream
         is read until EOF."""
      ...

   @abc.abstractmethod
   def image_inspect(self, name):
      "Return an im.Image_Info for image name, or None if it doesn’t exist."
      ...

   @abc.abstractmethod
   def image_pull(self, name):
      ...

   @abc.abstractmethod
   def image_tag(self, image_id, name):
      ...


class Docker_Engine(Engine):
   """Engine that talks to a Docker daemon’s HTTP API."""

   __slots__ = ("session",
                "url_base")

   def __init__(self, host=ig.DOCKER_HOST_DEFAULT, session=None):
      self.url_base = "%s/v%s" % (self.host_to_url(host), API_VERSION)
      self.session = session
      ig.VERBOSE("daemon API: %s" % self.url_base)

   @staticmethod
   def host_to_url(host):
      """Convert daemon address host, in $DOCKER_HOST syntax, to an HTTP base
         URL."""
      u = urllib.parse.urlsplit(host)
      if (u.scheme == "tcp"):
         return "http://%s" % u.netloc
      elif (u.scheme in ("http", "https")):
         return ("%s://%s%s" % (u.scheme, u.netloc, u.path)).rstrip("/")
      else:
         ig.FATAL("unsupported daemon address: %s" % host,
                  "expose the daemon on TCP, e.g. DOCKER_HOST=%s"
                  % ig.DOCKER_HOST_DEFAULT)

   @staticmethod
   def image_ref_split(name):
      """Split image reference name into (repository, tag) as the pull
         endpoint wants them. Digest references stay whole, with no tag."""
      if ("@" in name):
         return (name, None)
      (repo, sep, tag) = name.rpartition(":")
      if (sep == "" or "/" in tag):  # no tag, or colon was a registry port
         return (name, "latest")
      return (repo, tag)

   @staticmethod
   def message(res):
      "Return the error message the daemon put in response res."
      try:
         return res.json()["message"]
      except (ValueError, KeyError, TypeError):
         return res.text.strip() or res.reason

   def close(self):
      if (self.session is not None):
         self.session.close()

   def container_commit(self, state, message):
      config = state.config.as_json()
      if (state.config.cmd is None and state.config.entrypoint is None):
         # The daemon fills an empty Cmd from the container’s own command,
         # which is a RUN command or a no-op marker. Keep the parent’s.
         parent = self.image_inspect(state.image_id)
         if (parent is not None):
            config["Cmd"] = parent.config.cmd
      res = self.request("POST", "/commit", {201},
                         params={ "container": state.container_id,
                                  "comment": message },
                         json=config)
      image_id = res.json()["Id"]
      ig.VERBOSE("committed %s -> %s" % (ig.short_id(state.container_id),
                                         ig.short_id(image_id)))
      return image_id

   def container_create(self, state):
      body = state.config.as_json()
      body["Image"] = state.image_id
      res = self.request("POST", "/containers/create", {201}, json=body)
      out = res.json()
      for w in (out.get("Warnings") or []):
         ig.WARNING("daemon: %s" % w)
      return out["Id"]

   def container_remove(self, container_id):
      self.request("DELETE", "/containers/%s" % container_id, {204},
                   params={ "v": "1", "force": "1" })

   def container_run(self, container_id, attach):
      self.request("POST", "/containers/%s/start" % container_id, {204, 304})
      if (attach):
         self.logs_relay(container_id, follow=True)
      res = self.request("POST", "/containers/%s/wait" % container_id, {200})
      code = res.json()["StatusCode"]
      if (code != 0):
         if (not attach):
            # Nobody has seen the output yet, and it probably says what went
            # wrong.
            self.logs_relay(container_id, follow=False)
         ig.FATAL("container %s exited with %d"
                  % (ig.short_id(container_id), code), exc=ig.Engine_Error)

   def container_upload(self, container_id, stream, dest):
      ig.VERBOSE("uploading to %s: %s" % (ig.short_id(container_id), dest))
      self.request("PUT", "/containers/%s/archive" % container_id, {200},
                   params={ "path": "/" },
                   headers={ "Content-Type": "application/x-tar" },
                   data=stream)

   def image_inspect(self, name):
      res = self.request("GET", "/images/%s/json" % name, {200, 404})
      if (res.status_code == 404):
         ig.VERBOSE("image not found: %s" % name)
         return None
      out = res.json()
      return im.Image_Info(out["Id"],
                           im.Container_Config.from_json(out.get("Config")))

   def image_pull(self, name):
      (repo, tag) = self.image_ref_split(name)
      params = { "fromImage": repo }
      if (tag is not None):
         params["tag"] = tag
      ig.INFO("pulling image: %s" % name)
      res = self.request("POST", "/images/create", {200}, params=params,
                         stream=True)
      # Errors mid-pull arrive in the progress stream with status 200.
      for line in res.iter_lines():
         if (len(line) == 0):
            continue
         try:
            msg = json.loads(line)
         except ValueError:
            ig.FATAL("pull: invalid progress message: %s" % line,
                     exc=ig.Engine_Error)
         if ("error" in msg):
            ig.FATAL("pull failed: %s: %s" % (name, msg["error"]),
                     exc=ig.Engine_Error)
         ig.DEBUG("pull: %s %s" % (msg.get("id", ""), msg.get("status", "")))

   def image_tag(self, image_id, name):
      (repo, tag) = self.image_ref_split(name)
      params = { "repo": repo }
      if (tag is not None):
         params["tag"] = tag
      self.request("POST", "/images/%s/tag" % image_id, {201}, params=params)
      ig.INFO("tagged %s as %s" % (ig.short_id(image_id), name))

   def logs_relay(self, container_id, follow):
      """Copy the container’s output to our stdout and stderr; if follow,
         keep going until it exits. Without a TTY, the daemon multiplexes
         both streams into frames, each with an 8-byte header: stream type,
         three padding bytes, and a big-endian 32-bit payload length."""
      res = self.request("GET", "/containers/%s/logs" % container_id, {200},
                         params={ "follow": "1" if follow else "0",
                                  "stdout": "1", "stderr": "1" },
                         stream=True)
      raw = res.raw
      while True:
         header = raw.read(8)
         if (len(header) < 8):
            break
         (type_, length) = struct.unpack(">BxxxL", header)
         payload = raw.read(length)
         if (type_ not in (STREAM_STDOUT, STREAM_STDERR)):
            ig.DEBUG("log stream: skipping frame of type %d" % type_)
            continue
         fp = sys.stderr if type_ == STREAM_STDERR else sys.stdout
         fp.buffer.write(payload)
         fp.flush()

   def request(self, method, path, statuses=(200,), **kwargs):
      """Request path (relative to the API base) using method and return the
         response object. Any status not in statuses is a fatal error."""
      self.session_init_maybe()
      url = self.url_base + path
      ig.VERBOSE("%s: %s" % (method, url))
      try:
         res = self.session.request(method, url, **kwargs)
      except requests.exceptions.RequestException as x:
         ig.FATAL("%s failed: %s" % (method, x), exc=ig.Engine_Error)
      ig.VERBOSE("response status: %d" % res.status_code)
      if (res.status_code not in statuses):
         ig.FATAL("%s %s failed; expected status %s but got %d: %s"
                  % (method, path, sorted(statuses), res.status_code,
                     self.message(res)), exc=ig.Engine_Error)
      return res

   def session_init_maybe(self):
      "Initialize session if it's not initialized; otherwise do nothing."
      if (self.session is None):
         ig.VERBOSE("initializing session")
         self.session = requests.Session()
