"""Question-bank folder tree assembly."""


def _key(value):
    return str(value) if value is not None else None


def _sibling_order(item):
    return (item.get('order', 0), str(item.get('_id')))


def sort_folder_files(folders):
    """Sort each folder's embedded files by their ``order`` key, in place."""
    for folder in folders:
        if folder.get('files'):
            folder['files'].sort(key=_sibling_order)
    return folders


def build_folder_tree(folders, parent_id=None):
    """Nest a flat folder list under ``parent_id`` (``None`` for the roots).

    Siblings are ordered by ``order`` then id. Folders whose parent is not in the
    list are unreachable and left out of the tree. Each folder is emitted at most
    once, so a corrupted parent cycle cannot recurse forever.
    """
    children_of = {}
    for folder in folders:
        children_of.setdefault(_key(folder.get('parent_id')), []).append(folder)
    for siblings in children_of.values():
        siblings.sort(key=_sibling_order)

    seen = set()

    def build(key):
        nodes = []
        for folder in children_of.get(key, []):
            folder_key = _key(folder['_id'])
            if folder_key in seen:
                continue
            seen.add(folder_key)
            nodes.append(dict(folder, children=build(folder_key)))
        return nodes

    return build(_key(parent_id))


def descendant_ids(folders, folder_id):
    """Ids (as strings) of every folder below ``folder_id``."""
    children_of = {}
    for folder in folders:
        children_of.setdefault(_key(folder.get('parent_id')), []).append(_key(folder['_id']))

    found = set()
    stack = [_key(folder_id)]
    while stack:
        for child in children_of.get(stack.pop(), []):
            if child not in found:
                found.add(child)
                stack.append(child)
    return found


def would_create_cycle(folders, folder_id, new_parent_id):
    """True if re-parenting ``folder_id`` under ``new_parent_id`` would make a loop."""
    if new_parent_id is None:
        return False
    if _key(new_parent_id) == _key(folder_id):
        return True
    return _key(new_parent_id) in descendant_ids(folders, folder_id)
