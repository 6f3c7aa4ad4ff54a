"""Retry policy for failures that may be caused by bad credentials."""

from typing import Callable, TypeVar

from .errors import AuthAmbiguousError, classify_error
from .utils import warn

T = TypeVar("T")


class AuthRetryPolicy:
    """Wrap remote calls so auth-ambiguous failures prompt the user.

    ``decide(error)`` returns True to retry the call or False to abandon it.
    Abandoning clears stored credentials and re-raises the classified error.
    Every other failure is re-raised classified without prompting. The
    policy holds no per-call state and may wrap calls from several threads.
    """

    def __init__(
        self,
        decide: Callable[[AuthAmbiguousError], bool],
        clear_credentials: Callable[[], None],
        classify: Callable[[BaseException], BaseException] = classify_error,
    ):
        self.decide = decide
        self.clear_credentials = clear_credentials
        self.classify = classify

    def wrap(self, operation: Callable[[], T]) -> T:
        """Run ``operation``, prompting and retrying while it fails on credentials.

        :return: The result of the first successful call
        """
        while True:
            try:
                return operation()
            except Exception as e:
                classified = self.classify(e)
                if not isinstance(classified, AuthAmbiguousError):
                    if classified is e:
                        raise
                    raise classified from e
                warn(f"Request failed, credentials may be invalid: {classified}")
                if self.decide(classified):
                    continue
                self.clear_credentials()
                if classified is e:
                    raise
                raise classified from e

