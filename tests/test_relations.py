from obsidian_feishu_sync.models.blocks import BlockTree, BlockType
from obsidian_feishu_sync.sync.relations import validate_relations

from conftest import text_block


def assert_consistent(tree: BlockTree):
    for block in tree:
        if block.parent_id is not None:
            parent = tree.get(block.parent_id)
            assert parent is not None
            assert parent.children.count(block.block_id) == 1
        for child_id in block.children:
            assert tree.get(child_id).parent_id == block.block_id


class TestValidateRelations:
    def test_consistent_input_unchanged(self):
        """A consistent tree keeps its links and order."""
        blocks = [
            text_block("p", "parent", BlockType.BULLET, children=["c"]),
            text_block("c", "child", BlockType.BULLET, parent_id="p"),
        ]
        tree = validate_relations(blocks)
        assert tree.ids() == ["p", "c"]
        assert tree.get("p").children == ["c"]
        assert tree.get("c").parent_id == "p"
        assert_consistent(tree)

    def test_missing_children_dropped(self):
        """Children naming unknown blocks are removed."""
        tree = validate_relations([text_block("p", "x", children=["ghost", "p"])])
        assert tree.get("p").children == []

    def test_dangling_parent_becomes_top_level(self):
        """A parent id naming a missing block is cleared."""
        tree = validate_relations([text_block("c", "x", parent_id="ghost")])
        assert tree.get("c").parent_id is None
        assert [b.block_id for b in tree.top_level()] == ["c"]

    def test_unlisted_child_appended(self):
        """A child whose parent does not list it is appended to the parent."""
        blocks = [
            text_block("p", "parent", BlockType.BULLET, children=["a"]),
            text_block("a", "a", parent_id="p"),
            text_block("b", "b", parent_id="p"),
        ]
        tree = validate_relations(blocks)
        assert tree.get("p").children == ["a", "b"]
        assert_consistent(tree)

    def test_first_claim_wins(self):
        """A child listed by two parents belongs to the first."""
        blocks = [
            text_block("p1", "one", children=["c"]),
            text_block("p2", "two", children=["c"]),
            text_block("c", "child", parent_id="p2"),
        ]
        tree = validate_relations(blocks)
        assert tree.get("c").parent_id == "p1"
        assert tree.get("p2").children == []
        assert_consistent(tree)

    def test_cycle_broken(self):
        """Mutual parent links never produce a loop."""
        blocks = [
            text_block("a", "a", children=["b"]),
            text_block("b", "b", children=["a"]),
        ]
        tree = validate_relations(blocks)
        assert tree.get("a").children == ["b"]
        assert tree.get("b").children == []
        assert tree.get("a").parent_id is None
        assert_consistent(tree)

    def test_duplicate_ids_dropped(self):
        """Only the first block with an id is kept."""
        tree = validate_relations([text_block("x", "first"), text_block("x", "second")])
        assert len(tree) == 1
        assert tree.get("x").plain_text() == "first"

    def test_input_not_mutated(self):
        """Repairs happen on copies."""
        original = text_block("c", "x", parent_id="ghost")
        validate_relations([original])
        assert original.parent_id == "ghost"
