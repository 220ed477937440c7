"""Pipeline execution mixin for multi-step loaders.

Used by the reference geometry refresh, which fetches, parses and stores
street segments as separate named steps.
"""

from __future__ import annotations

import logging
from typing import Iterable, Callable, Any
from abc import abstractmethod

from colorama import Fore, Style

logger = logging.getLogger(__name__)


class PipelineMixin:
    """Mixin for loaders that use multi-step pipeline processing.

    Usage:
        class MyLoader(PipelineMixin):
            NAME = 'segments'

            def _load_pipeline(self):
                return [
                    ('Fetch', self.fetch, {}),
                    ('Store', self.store, {'replace': True}),
                ]

            def run(self):
                return self._execute_pipeline()

    Each step receives the previous step's result as its first positional
    argument (the first step receives only its kwargs).
    """

    NAME: str = 'loader'

    # Longest typical step name, used to align the progress arrows
    STEP_WIDTH: int = len('Build Segment Records')

    @abstractmethod
    def _load_pipeline(self, **kwargs: Any) -> Iterable[tuple[str, Callable, dict[str, Any]]]:
        """Define the pipeline steps.

        Returns:
            List of tuples: (step_name, function, kwargs)
        """
        ...

    def _execute_pipeline(self, progress: bool = True, **pipeline_kwargs: Any) -> Any:
        """Execute the pipeline and return the final result.

        Args:
            progress: Whether to print progress messages (default: True)
            **pipeline_kwargs: Additional parameters passed to _load_pipeline()

        Returns:
            Result from the final pipeline step
        """
        pipeline = self._load_pipeline(**pipeline_kwargs)
        result = None
        first = True

        for name, func, kwargs in pipeline:
            try:
                if first:
                    result = func(**kwargs)
                    first = False
                else:
                    result = func(result, **kwargs)
                if progress:
                    self._log_step_success(name)
            except Exception as e:
                self._log_step_failure(name, e)
                raise

        return result

    def _padding(self, step_name: str) -> str:
        return "-" * (self.STEP_WIDTH - len(step_name) + 4)

    def _log_step_success(self, step_name: str) -> None:
        """Print success message for a pipeline step."""
        name = self.NAME.title()
        logger.debug(f"{name}: step '{step_name}' complete")
        print(f'{name} -- {step_name} {self._padding(step_name)}> {Fore.GREEN}Complete{Style.RESET_ALL}')

    def _log_step_failure(self, step_name: str, error: Exception) -> None:
        """Print failure message for a pipeline step."""
        name = self.NAME.title()
        logger.error(f"{name}: step '{step_name}' failed: {error}")
        print(f'{name} -- {step_name} {self._padding(step_name)}> {Fore.RED}Failed{Style.RESET_ALL}: {error}')
