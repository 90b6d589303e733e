from typing import Iterable, List

from secretsync import output
from secretsync.model import PlanItem, RemoteSecretState, SecretDocument


def _by_name(items):
    if isinstance(items, dict):
        return dict(items)
    return {item.name: item for item in items}


def diff(desired: Iterable[SecretDocument],
         observed: Iterable[RemoteSecretState],
         prune_unmanaged=False,
         protected=(),
         protected_prefixes=()) -> List[PlanItem]:
    """Compute the plan that makes `observed` match `desired`.

    Secrets that only exist remotely are left alone unless
    `prune_unmanaged` is set. Names in `protected` are never deleted, even
    when pruning: their source document exists but could not be read. The
    same holds for names starting with one of `protected_prefixes`, the
    directories that could not be read.

    The plan lists all creates, then updates, then deletes and finally
    no-ops. Within each phase items are sorted by name.

    """
    desired = _by_name(desired)
    observed = _by_name(observed)
    protected = set(protected)
    protected_prefixes = tuple(protected_prefixes)

    phases = {action: [] for action in PlanItem.PHASES}

    for name, document in sorted(desired.items()):
        state = observed.get(name)
        if state is None:
            phases[PlanItem.CREATE].append(
                PlanItem(PlanItem.CREATE, name, document.payload))
            continue
        if document.checksum == state.checksum:
            phases[PlanItem.NOOP].append(
                PlanItem(PlanItem.NOOP, name,
                         expected_version=state.version,
                         checksum_before=state.checksum))
        else:
            phases[PlanItem.UPDATE].append(
                PlanItem(PlanItem.UPDATE, name, document.payload,
                         expected_version=state.version,
                         checksum_before=state.checksum))

    for name, state in sorted(observed.items()):
        if name in desired:
            continue
        if not prune_unmanaged:
            output.annotate(
                "unmanaged remote secret {} left alone".format(name),
                debug=True)
            continue
        if name in protected:
            output.warn(
                "not pruning {}: its source document failed to load".format(
                    name))
            continue
        if protected_prefixes and name.startswith(protected_prefixes):
            output.warn(
                "not pruning {}: its source directory could not be read"
                .format(name))
            continue
        phases[PlanItem.DELETE].append(
            PlanItem(PlanItem.DELETE, name,
                     expected_version=state.version,
                     checksum_before=state.checksum))

    plan = []
    for action in PlanItem.PHASES:
        plan.extend(phases[action])
    return plan
