from typing import Dict, List, Optional, Union

# A file is its name; a folder is [name, *children].
TreeItem = Union[str, List["TreeItem"]]


def convert_files_to_tree(files: Dict[str, str]) -> List[TreeItem]:
    """
    Turn a flat path -> content map into the nested structure the file explorer renders.

    {"src/Button.tsx": "...", "README.md": "..."} -> ["README.md", ["src", "Button.tsx"]]
    """
    tree: Dict[str, Optional[dict]] = {}
    for path in sorted(files):
        parts = [p for p in path.split("/") if p]
        if not parts:
            continue
        current = tree
        for part in parts[:-1]:
            node = current.get(part)
            if node is None:
                node = {}
                current[part] = node
            current = node
        current.setdefault(parts[-1], None)

    def convert(node: Dict[str, Optional[dict]]) -> List[TreeItem]:
        children: List[TreeItem] = []
        for name, child in node.items():
            if child is None:
                children.append(name)
            else:
                children.append([name, *convert(child)])
        return children

    return convert(tree)
