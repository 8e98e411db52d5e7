import os
import os.path
import posixpath
import stat
import tarfile
import threading

from imgrow import imgrow as ig


## Constants ##

# Default capacity of a Pipe in bytes. This is the most archive data held in
# memory at once during COPY.
PIPE_CAPACITY = 1024 * 1024


## Classes ##

class Pipe:
   """Bounded in-memory byte pipe connecting one producer thread and one
      consumer thread. write() blocks while the buffer is full; read() blocks
      while it’s empty. Thus memory use is bounded by capacity, not by the
      amount of data that passes through.

      Ends:

        close_write() .. producer is done; reader sees EOF once the buffer
                         drains.

        close() ........ tear down both ends, e.g. on cancellation or when
                         the consumer gave up. Blocked and future writes
                         raise BrokenPipeError; reads return EOF.

      The read side is file-like enough (read() and iteration) for requests
      to stream it as a chunked request body."""

   __slots__ = ("buf",
                "capacity",
                "closed",
                "cond",
                "eof",
                "read_ct")  # bytes read so far

   def __init__(self, capacity=PIPE_CAPACITY):
      assert (capacity > 0)
      self.buf = bytearray()
      self.capacity = capacity
      self.closed = False   # both ends closed
      self.cond = threading.Condition()
      self.eof = False      # write end closed
      self.read_ct = 0

   def __iter__(self):
      while True:
         data = self.read(ig.HTTP_CHUNK_SIZE)
         if (len(data) == 0):
            return
         yield data

   def close(self):
      with self.cond:
         if (not self.closed):
            ig.TRACE("pipe: closing both ends")
         self.closed = True
         self.eof = True
         self.buf.clear()
         self.cond.notify_all()

   def close_write(self):
      with self.cond:
         self.eof = True
         self.cond.notify_all()

   def read(self, size=-1):
      """Return up to size bytes, or everything buffered if size is negative.
         Block until at least one byte is available; return b"" at EOF."""
      with self.cond:
         while (len(self.buf) == 0 and not self.eof):
            self.cond.wait()
         if (len(self.buf) == 0):
            return b""
         if (size is None or size < 0 or size > len(self.buf)):
            size = len(self.buf)
         data = bytes(self.buf[:size])
         del self.buf[:size]
         self.read_ct += len(data)
         self.cond.notify_all()
         return data

   def write(self, data):
      """Write all of data, blocking as needed for the reader to make room.
         Return the number of bytes written."""
      view = memoryview(data)
      with self.cond:
         while (len(view) > 0):
            while (len(self.buf) >= self.capacity and not self.closed):
               self.cond.wait()
            if (self.closed):
               raise BrokenPipeError("pipe closed by reader")
            if (self.eof):
               raise ValueError("write to pipe after close_write()")
            n = min(self.capacity - len(self.buf), len(view))
            self.buf += view[:n]
            view = view[n:]
            self.cond.notify_all()
      return len(data)


class TarFile(tarfile.TarFile):

   # This subclass normalizes ownership and strips dangerous mode bits from
   # what we send into containers; files land owned by root, as with
   # Dockerfile COPY.

   # Need new method name because add() is called recursively and we don’t
   # want those internal calls to get our special sauce.
   def add_(self, name, arcname, **kwargs):
      def filter_(ti):
         self.fix_member_uidgid(ti)
         return ti
      kwargs["filter"] = filter_
      super().add(name, arcname=arcname, **kwargs)

   @staticmethod
   def fix_member_uidgid(ti):
      assert (ti.name[0] != "/")  # absolute paths unsafe but shouldn’t happen
      if (not (ti.isfile() or ti.isdir() or ti.issym() or ti.islnk())):
         ig.FATAL("can’t COPY: invalid file type: %s" % ti.name)
      ti.uid = 0
      ti.uname = "root"
      ti.gid = 0
      ti.gname = "root"
      if (ti.mode & stat.S_ISUID):
         ig.VERBOSE("stripping unsafe setuid bit: %s" % ti.name)
         ti.mode &= ~stat.S_ISUID
      if (ti.mode & stat.S_ISGID):
         ig.VERBOSE("stripping unsafe setgid bit: %s" % ti.name)
         ti.mode &= ~stat.S_ISGID


class Tar_Producer(threading.Thread):
   """Thread that writes a tar archive of src into pipe, naming the top-level
      entry arcname, then closes the pipe’s write end. Any failure is saved
      in attribute error for the consumer side to report after join(); the
      thread itself never raises."""

   def __init__(self, pipe, src, arcname):
      super().__init__(name="tar producer: %s" % src, daemon=True)
      self.arcname = arcname
      self.error = None
      self.pipe = pipe
      self.src = src

   def run(self):
      try:
         # Stream mode “w|” never seeks, so the pipe is a valid fileobj.
         with TarFile.open(fileobj=self.pipe, mode="w|") as tf:
            tf.add_(self.src, self.arcname)
      except ig.Fatal_Error as x:
         self.error = x
      except BrokenPipeError:
         ig.VERBOSE("archive consumer went away: %s" % self.src)
         self.error = ig.Fatal_Error("archive transfer cancelled: %s"
                                     % self.src, None, None)
      except (OSError, tarfile.TarError) as x:
         self.error = ig.Fatal_Error("can’t archive: %s: %s" % (self.src, x),
                                     None, None)
      finally:
         self.pipe.close_write()


## Supporting functions ##

def copy_dest(src, dst, multi):
   """Return the absolute in-container path that source src lands at, given
      COPY destination dst. multi is true if the instruction has more than
      one source.

      Directories always copy their contents into dst. Files go inside dst
      if it ends with a slash; otherwise dst names the file itself. Thus the
      result is "/" only for a directory copied to the root."""
   if (multi and not dst.endswith("/")):
      ig.FATAL("COPY: destination must end with / for multiple sources: %s"
               % dst, exc=ig.Precondition_Error)
   if (dst.endswith("/") and not os.path.isdir(src)):
      dst = posixpath.join(dst, os.path.basename(os.path.normpath(src)))
   return posixpath.normpath(posixpath.join("/", dst))

def source_resolve(context, src):
   """Return the absolute host path of COPY source src, which is relative to
      the build context directory. Fail if it doesn’t exist or is outside the
      context."""
   context_canon = os.path.realpath(context)
   path = os.path.realpath(os.path.join(context_canon, src))
   if (os.path.commonpath([path, context_canon]) != context_canon):
      ig.FATAL("COPY: can’t copy from outside context: %s" % src,
               exc=ig.Precondition_Error)
   if (not os.path.exists(path)):
      ig.FATAL("COPY: source file not found: %s" % src,
               exc=ig.Precondition_Error)
   return path
