"""
Last-resort release of native handles whose Python owner was dropped unclosed.

Explicit ``close()`` is the release path. This registry only backs it up:
collection timing is up to the garbage collector, and entries still pending
at interpreter shutdown are not run.
"""
import itertools
import logging
import warnings
import weakref

logger = logging.getLogger(__name__)

class FinalizationSupervisor:
    def __init__(self):
        self._entries = {}
        self._tokens = itertools.count(1)

    def register(self, owner, release, *handles, keepalive=None):
        """
        Track ``owner`` weakly; once it is collected, call ``release(*handles)``.

        ``release`` and ``handles`` are held strongly until the entry fires or
        is unregistered, so they must not reference ``owner``. ``keepalive`` is
        held the same way and pins an object (a parent connection) until then.
        Returns a token for :meth:`unregister`.
        """
        token = next(self._tokens)
        fin = weakref.finalize(owner, self._reclaim, token, type(owner).__name__, release, handles, keepalive)
        fin.atexit = False
        self._entries[token] = fin
        return token

    def unregister(self, token):
        """Drop an entry before an explicit release. Returns False if it already fired."""
        fin = self._entries.pop(token, None)
        if fin is None:
            return False
        return fin.detach() is not None

    def is_registered(self, token):
        return token in self._entries

    def __len__(self):
        return len(self._entries)

    def _reclaim(self, token, owner_name, release, handles, keepalive):
        self._entries.pop(token, None)
        logger.debug("reclaiming native handles of unclosed %s", owner_name)
        release(*handles)
        warnings.warn(f"unclosed {owner_name} reclaimed by the garbage collector", ResourceWarning)

# Process-wide registry shared by connections and streaming cursors.
supervisor = FinalizationSupervisor()
