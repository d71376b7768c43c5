from filetree import convert_files_to_tree


def test_empty_map_gives_empty_tree():
    assert convert_files_to_tree({}) == []


def test_flat_files_are_sorted():
    assert convert_files_to_tree({"b.txt": "", "a.txt": ""}) == ["a.txt", "b.txt"]


def test_nested_folders():
    files = {
        "src/components/Button.tsx": "",
        "src/App.tsx": "",
        "README.md": "",
        "src/components/Card.tsx": "",
    }

    assert convert_files_to_tree(files) == [
        "README.md",
        ["src", "App.tsx", ["components", "Button.tsx", "Card.tsx"]],
    ]


def test_blank_path_segments_are_ignored():
    assert convert_files_to_tree({"app//page.tsx": "", "": ""}) == [["app", "page.tsx"]]
