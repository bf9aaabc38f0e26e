from setuptools import setup, find_packages

setup(
    name="codegraph_kb",
    version="0.3.0",
    packages=find_packages(include=["codegraph_kb", "codegraph_kb.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml",
        # Code graph
        "networkx>=3.0",
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-java",
        "tree-sitter-c",
        "tree-sitter-cpp",
        "tree-sitter-go",
        "tree-sitter-rust",
        "tree-sitter-ruby",
        "tree-sitter-php",
        "tree-sitter-c-sharp",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "codegraph-kb=codegraph_kb.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Code graph ingestion, progressive queries, semantic clustering and budgeted context packs.",
)
