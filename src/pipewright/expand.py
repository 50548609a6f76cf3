# expand.py
from __future__ import annotations

import itertools
from typing import Any, Dict, Iterator, List

from .errors import MatrixError
from .expressions import to_str
from .model import Job, JobInstance, MatrixSpec


def validate_matrix(job_name: str, spec: MatrixSpec) -> None:
    if not spec.axes and not spec.include:
        raise MatrixError(f"Job '{job_name}' has an empty matrix (no axes and no include)")
    for axis, values in spec.axes.items():
        if not isinstance(values, (list, tuple)):
            raise MatrixError(f"Job '{job_name}' matrix axis '{axis}' must be a list, got {type(values).__name__}")
        if not values:
            raise MatrixError(f"Job '{job_name}' matrix axis '{axis}' has no values")
    for i, entry in enumerate(spec.include):
        if not isinstance(entry, dict) or not entry:
            raise MatrixError(f"Job '{job_name}' matrix include[{i}] must be a non-empty mapping")
    if spec.max_parallel is not None and spec.max_parallel < 1:
        raise MatrixError(f"Job '{job_name}' max-parallel must be >= 1, got {spec.max_parallel}")


def instance_id(name: str, bindings: Dict[str, Any]) -> str:
    """name[axis1=v1,axis2=v2] in binding order."""
    if not bindings:
        return name
    inner = ",".join(f"{k}={to_str(v)}" for k, v in bindings.items())
    return f"{name}[{inner}]"


def iter_combinations(spec: MatrixSpec) -> Iterator[Dict[str, Any]]:
    """
    Cross product of the axes, first axis slowest and last axis fastest,
    followed by each include entry in declaration order.
    """
    if spec.axes:
        names = list(spec.axes)
        for values in itertools.product(*(spec.axes[n] for n in names)):
            yield dict(zip(names, values))
    for entry in spec.include:
        yield dict(entry)


def expand(job: Job) -> Iterator[JobInstance]:
    """Lazily expand a template into its instances."""
    if job.matrix is None:
        yield JobInstance(id=job.name, template=job)
        return

    validate_matrix(job.name, job.matrix)
    seen: set[str] = set()
    for bindings in iter_combinations(job.matrix):
        iid = instance_id(job.name, bindings)
        if iid in seen:
            raise MatrixError(f"Job '{job.name}' matrix produces duplicate instance '{iid}'")
        seen.add(iid)
        yield JobInstance(id=iid, template=job, matrix=bindings)


def expand_all(jobs: List[Job]) -> Dict[str, List[JobInstance]]:
    """Template name -> materialised instances, in job declaration order."""
    return {job.name: list(expand(job)) for job in jobs}
