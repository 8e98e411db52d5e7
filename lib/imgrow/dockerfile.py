import ast
import collections

import lark

from imgrow import imgrow as ig


## Constants ##

GRAMMAR_COMMON = r"""
// Matching lines in the face of continuations is surprisingly hairy. Notes:
//
//   1. The underscore prefix means the rule is always inlined (i.e., removed
//      and children become children of its parent).
//
//   2. LINE_CHUNK must not match any characters that _LINE_CONTINUE does.
//
//   3. This is very sensitive to the location of repetition. Moving the plus
//      either to the entire regex (i.e., “/(...)+/”) or outside the regex
//      (i.e., ”/.../+”) gave parse errors.
//
_line: ( _LINE_CONTINUE | LINE_CHUNK )+
LINE_CHUNK: /[^\\\n]+|(\\(?![ \t]+\n))+/

WORD: /[^ \t\n=]/+

_string_list: "[" _WS? STRING_QUOTED ( "," _WS? STRING_QUOTED )* _WS? "]"

_WSH: /[ \t]/+                   // sequence of horizontal whitespace
_LINE_CONTINUE: "\\" _WSH? "\n"  // line continuation
_WS: ( _WSH | _LINE_CONTINUE )+  // horizontal whitespace w/ line continuations
_NEWLINES: ( _WSH? "\n" )+       // sequence of newlines

%import common.ESCAPED_STRING -> STRING_QUOTED
"""

# Dockerfile grammar. Image references are not validated here; the daemon
# does that when we ask for the image.
GRAMMAR_DOCKERFILE = r"""
start: dockerfile

dockerfile: _NEWLINES? ( instruction | comment )*

?instruction: _WS? ( cmd | commit | copy | entrypoint | env | expose | from_ | label | maintainer | run | tag | user | workdir )

comment: _WS? _COMMENT_BODY _NEWLINES
_COMMENT_BODY: /#[^\n]*/

cmd: "CMD"i _WS ( cmd_exec | cmd_shell ) _NEWLINES
cmd_exec.2: _string_list
cmd_shell: _line

commit: "COMMIT"i _NEWLINES

copy: "COPY"i _WS ( copy_list | copy_shell ) _NEWLINES
copy_list.2: _string_list
copy_shell: WORD ( _WS WORD )+

entrypoint: "ENTRYPOINT"i _WS ( entrypoint_exec | entrypoint_shell ) _NEWLINES
entrypoint_exec.2: _string_list
entrypoint_shell: _line

env: "ENV"i _WS ( env_space | env_equalses ) _NEWLINES
env_space: WORD _WS _line
env_equalses: env_equals ( _WS env_equals )*
env_equals: WORD "=" ( WORD | STRING_QUOTED )

expose: "EXPOSE"i ( _WS WORD )+ _NEWLINES

from_: "FROM"i _WS IMAGE_REF _NEWLINES

label: "LABEL"i _WS ( label_space | label_equalses ) _NEWLINES
label_space: WORD _WS _line
label_equalses: label_equals ( _WS label_equals )*
label_equals: WORD "=" ( WORD | STRING_QUOTED )

maintainer: "MAINTAINER"i _WS _line _NEWLINES

run: "RUN"i _WS ( run_exec | run_shell ) _NEWLINES
run_exec.2: _string_list
run_shell: _line

tag: "TAG"i _WS IMAGE_REF _NEWLINES

user: "USER"i _WS WORD _NEWLINES

workdir: "WORKDIR"i _WS _line _NEWLINES

IMAGE_REF: /[A-Za-z0-9$:._\/@-]+/
""" + GRAMMAR_COMMON


## Classes ##

# What the parser hands the build: instruction name (upper case), argument
# tokens, and boolean attributes such as “json” for exec form.
Instruction_Text = collections.namedtuple("Instruction_Text",
                                          ["lineno", "name", "args", "attrs"])


class Tree(lark.tree.Tree):

   def child(self, cname):
      """Locate a descendant subtree named cname using breadth-first search
         and return it. If no such subtree exists, return None."""
      return next(self.children_(cname), None)

   def child_terminals(self, cname, tname):
      """Locate a descendant substree named cname using breadth-first search
         and yield the values of its child terminals named tname. If no such
         subtree exists, or it has no such terminals, yield empty sequence."""
      for d in self.iter_subtrees_topdown():
         if (d.data == cname):
            return d.terminals(tname)
      return []

   def child_terminals_cat(self, cname, tname):
      """Return the concatenated values of all child terminals named tname as
         a string, with no delimiters. If none, return the empty string."""
      return "".join(self.child_terminals(cname, tname))

   def children_(self, cname):
      "Yield children of tree named cname using breadth-first search."
      for st in self.iter_subtrees_topdown():
         if (st.data == cname):
            yield st

   def terminal(self, tname, i=0):
      """Return the value of the ith child terminal named tname (zero-based),
         or None if not found."""
      for (j, t) in enumerate(self.terminals(tname)):
         if (j == i):
            return t
      return None

   def terminals(self, tname):
      """Yield values of all child terminals named tname, or empty list if
         none found."""
      for j in self.children:
         if (isinstance(j, lark.lexer.Token) and j.type == tname):
            yield j.value

   def terminals_cat(self, tname):
      """Return the concatenated values of all child terminals named tname as
         a string, with no delimiters. If none, return the empty string."""
      return "".join(self.terminals(tname))


## Globals ##

# Dockerfile parser object. Building it is slow-ish, so do it once, on first
# use.
parser = None


## Main ##

def parse(text, filename="Dockerfile"):
   """Parse Dockerfile text and return a list of Instruction_Text in file
      order. Syntax errors are fatal."""
   global parser
   if (parser is None):
      parser = lark.Lark(GRAMMAR_DOCKERFILE, parser="earley",
                         propagate_positions=True, tree_class=Tree)
   # Avoid Lark issue #237: lark.exceptions.UnexpectedEOF if the file does not
   # end in newline.
   text += "\n"
   try:
      tree = parser.parse(text)
   except lark.exceptions.UnexpectedInput as x:
      ig.VERBOSE(x)  # noise about what was expected in the grammar
      ig.FATAL("can’t parse: %s:%d,%d\n\n%s"
               % (filename, x.line, x.column, x.get_context(text, 39)))
   ig.DEBUG(tree.pretty())
   texts = list()
   for st in tree.child("dockerfile").children:
      if (st.data == "comment"):
         continue
      name = str(st.data).rstrip("_")
      (args, attrs) = globals()["args_" + name](st, name)
      texts.append(Instruction_Text(getattr(st.meta, "line", None),
                                    name.upper(), args, attrs))
   return texts


## Argument extractors ##

# One per instruction, each taking the instruction’s subtree and name and
# returning (args, attrs).

def args_cmd(st, name):
   return args_exec_or_shell(st, name)

def args_commit(st, name):
   return ([], {})

def args_copy(st, name):
   if (st.child("copy_list") is not None):
      args = [unescape(i) for i in st.child_terminals("copy_list",
                                                      "STRING_QUOTED")]
      return (args, { "json": True })
   else:
      return (list(st.child_terminals("copy_shell", "WORD")), {})

def args_entrypoint(st, name):
   return args_exec_or_shell(st, name)

def args_env(st, name):
   return args_pairs(st, name)

def args_exec_or_shell(st, name):
   exec_ = st.child(name + "_exec")
   if (exec_ is not None):
      return ([unescape(i) for i in exec_.terminals("STRING_QUOTED")],
              { "json": True })
   else:
      return ([st.child_terminals_cat(name + "_shell", "LINE_CHUNK").strip()],
              {})

def args_expose(st, name):
   return (list(st.terminals("WORD")), {})

def args_from(st, name):
   return ([st.terminal("IMAGE_REF")], {})

def args_label(st, name):
   return args_pairs(st, name)

def args_maintainer(st, name):
   return ([st.terminals_cat("LINE_CHUNK").strip()], {})

def args_pairs(st, name):
   """Key/value instructions come in two flavors: “KEY VALUE”, one pair with
      the rest of the line as value, and “K1=V1 K2=V2 ...”. Either way return
      the flattened pairs."""
   space = st.child(name + "_space")
   if (space is not None):
      return ([space.terminal("WORD"),
               space.terminals_cat("LINE_CHUNK").strip()], {})
   args = list()
   for eq in st.children_(name + "_equals"):
      v = eq.terminal("WORD", 1)
      if (v is None):
         v = unescape(eq.terminal("STRING_QUOTED"))
      args += [eq.terminal("WORD", 0), v]
   return (args, {})

def args_run(st, name):
   return args_exec_or_shell(st, name)

def args_tag(st, name):
   return ([st.terminal("IMAGE_REF")], {})

def args_user(st, name):
   return ([st.terminal("WORD")], {})

def args_workdir(st, name):
   return ([st.terminals_cat("LINE_CHUNK").strip()], {})


## Supporting functions ###

def unescape(sl):
   # The Dockerfile reference does not precisely define string escaping, but I’m
   # guessing it’s the Go rules. You will note that we are using Python rules.
   # This is wrong but close enough for now.
   if (    not sl.startswith('"')                          # no start quote
       and (not sl.endswith('"') or sl.endswith('\\"'))):  # no end quote
      sl = '"%s"' % sl
   assert (len(sl) >= 2 and sl[0] == '"' and sl[-1] == '"' and sl[-2:] != '\\"')
   return ast.literal_eval(sl)
