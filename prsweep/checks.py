"""CI success predicates.

GitHub reports CI in two shapes: a precomputed ``statusCheckRollup`` state, or
the individual check runs and legacy commit status contexts that the rollup is
built from. Both are judged behind the same ``CISignal`` interface so the
evaluator does not care which one the query returned.
"""

from typing import List

from .models import CheckConclusion, StatusSnapshot, StatusState

# Anything else, skipped runs included, blocks the merge
PASSING_CONCLUSIONS = (CheckConclusion.SUCCESS, CheckConclusion.NEUTRAL)


class CISignal:
    name = "base"

    def failures(self, snapshot: StatusSnapshot) -> List[str]:
        """Return one human-readable line per failing or pending CI signal."""
        raise NotImplementedError


class RollupSignal(CISignal):
    name = "rollup"

    def failures(self, snapshot: StatusSnapshot) -> List[str]:
        state = snapshot.combined_state
        if state == StatusState.SUCCESS:
            return []
        # A null rollup means nothing has reported on the head commit yet
        label = state.value if state is not None else "missing"
        return [f'status is "{label}"']


class DetailedSignal(CISignal):
    name = "detailed"

    def failures(self, snapshot: StatusSnapshot) -> List[str]:
        lines: List[str] = []
        if snapshot.checks_truncated:
            # Runs past the first page were never seen
            lines.append("more check runs than one query returns; not all were inspected")
        for run in snapshot.check_runs:
            if run.conclusion in PASSING_CONCLUSIONS:
                continue
            label = run.conclusion.value if run.conclusion is not None else "PENDING"
            lines.append(_line(run.name, label, run.permalink))
        for status in snapshot.status_contexts:
            if status.state == StatusState.SUCCESS:
                continue
            lines.append(_line(status.context, status.state.value, status.target_url))
        return lines


def _line(name: str, state: str, link) -> str:
    if link:
        return f"{name} ({state}): {link}"
    return f"{name} ({state})"


ROLLUP = RollupSignal()
DETAILED = DetailedSignal()


def signal_for(snapshot: StatusSnapshot) -> CISignal:
    if snapshot.rollup_requested or snapshot.combined_state is not None:
        return ROLLUP
    return DETAILED
