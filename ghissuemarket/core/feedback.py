"""
Feedback engine client.

The feedback engine is an external executable that answers free-form
queries about the market. It takes the query as its only argument and
prints the answer on stdout.
"""

import subprocess

from ghissuemarket.core.errors import FeedbackError
from ghissuemarket.utils.logger import get_logger

logger = get_logger("feedback")


class FeedbackClient:
    def __init__(self, executable: str, timeout: float = 30.0):
        self.executable = executable
        self.timeout = timeout

    def query(self, query: str) -> str:
        """
        Ask the feedback engine a question.

        Returns:
            The engine's answer, stripped; "" when it printed nothing

        Raises:
            FeedbackError: the engine is missing, failed or timed out
        """
        logger.info(f"Executing query: {query}")
        try:
            result = subprocess.run(
                [self.executable, query],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise FeedbackError(f"Feedback engine gave no answer within {self.timeout}s") from None
        except OSError as e:
            raise FeedbackError(f"Cannot run feedback engine {self.executable}: {e}") from e

        if result.returncode != 0:
            raise FeedbackError(
                f"Error executing feedback engine: exit code {result.returncode}, "
                f"output: {(result.stderr or result.stdout).strip()}"
            )

        return result.stdout.strip()
