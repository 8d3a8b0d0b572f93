"""
Installation step descriptors and the step runner.

A step is a name, an action, a guard deciding whether it applies to the
current build and a fallibility class. Fatal steps propagate every error and
stop the pipeline. Best-effort steps never stop the pipeline: expected soft
failures are logged as warnings, anything else is logged with its traceback
so real bugs stay visible.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from languagepack.core.exceptions import LanguagePackError

logger = logging.getLogger(__name__)

# Failures a best-effort step is expected to hit
SOFT_FAILURES = (LanguagePackError, OSError)


class Fallibility(Enum):
    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


def always(context: Any) -> bool:
    return True


@dataclass(frozen=True)
class InstallationStep:
    """
    Stateless description of one pipeline step.

    Attributes:
        name: Step name used in logs
        action: Called with the build context
        guard: Called with the build context; the step is skipped when False
        fallibility: Whether failure aborts the build
    """

    name: str
    action: Callable[[Any], None]
    guard: Callable[[Any], bool] = always
    fallibility: Fallibility = Fallibility.FATAL

    @property
    def best_effort(self) -> bool:
        return self.fallibility is Fallibility.BEST_EFFORT


def run_step(step: InstallationStep, context: Any) -> bool:
    """
    Run one step against the build context.

    Args:
        step: Step to run
        context: Object passed to the step's guard and action

    Returns:
        True if the step ran to completion, False if it was skipped or a
        best-effort step failed

    Raises:
        Exception: Anything raised by a fatal step
    """
    if not step.best_effort:
        if not step.guard(context):
            logger.debug(f"Skipping step {step.name}")
            return False
        logger.debug(f"Running step {step.name}")
        step.action(context)
        return True

    try:
        if not step.guard(context):
            logger.debug(f"Skipping step {step.name}")
            return False
        logger.debug(f"Running step {step.name}")
        step.action(context)
        return True
    except SOFT_FAILURES as e:
        logger.warning(f"Step {step.name} failed, continuing: {e}")
    except Exception:
        logger.exception(f"Unexpected internal error in step {step.name}, continuing")
    return False


def run_steps(steps, context: Any) -> None:
    for step in steps:
        run_step(step, context)
