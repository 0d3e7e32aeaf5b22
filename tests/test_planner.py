from procgen import MarshalStep, ReadMode, RegisterPreservationPlanner, RegisterRead


def _render(st):
    return []


def _planner():
    return RegisterPreservationPlanner({"a", "xmm5"}, "a", "xmm5")


def _lea_step(arg):
    reads = (RegisterRead("c", ReadMode.ADDRESS), RegisterRead("d", ReadMode.ADDRESS))
    return MarshalStep(arg, _render, reads, frozenset({"a"}), in_place=_render)


def test_value_needed_later_is_saved_and_restored_once():
    steps = [
        _lea_step(3),
        MarshalStep(2, _render, (RegisterRead("a"),)),
        MarshalStep(1, _render, (RegisterRead("a", ReadMode.ADDRESS, True),)),
        MarshalStep(0, _render),
    ]
    plan = _planner().plan(steps)
    assert plan.count("save", "a") == 1
    assert plan.count("restore", "a") == 1
    assert [op.kind for op in plan.ops_before(0)] == ["save", "clobber"]
    assert [op.kind for op in plan.ops_before(1)] == ["restore"]
    assert plan.ops_before(2) == []
    info = plan.per_register["a"]
    assert info.must_save and info.save_slot == 0
    assert info.restore_before_arg_index == 2
    assert plan.in_place == [False, False, False, False]


def test_single_register_address_needs_no_preservation():
    steps = [
        _lea_step(2),
        MarshalStep(1, _render, (RegisterRead("a", ReadMode.ADDRESS, True),)),
        MarshalStep(0, _render),
    ]
    plan = _planner().plan(steps)
    assert plan.count("save", "a") == 0
    assert plan.count("restore", "a") == 0
    assert plan.in_place[0] is True
    assert plan.slot_families == []


def test_dead_value_is_clobbered_freely():
    steps = [_lea_step(1), MarshalStep(0, _render)]
    plan = _planner().plan(steps)
    assert plan.count("save") == 0
    assert plan.count("clobber", "a") == 1


def test_restored_again_only_after_another_clobber():
    writes = frozenset({"a"})
    steps = [
        MarshalStep(4, _render, (), writes),
        MarshalStep(3, _render, (RegisterRead("a"),)),
        MarshalStep(2, _render, (RegisterRead("a"),)),
        MarshalStep(1, _render, (), writes),
        MarshalStep(0, _render, (RegisterRead("a"),)),
    ]
    plan = _planner().plan(steps)
    assert plan.count("save", "a") == 1
    assert [op.step for op in plan.ops if op.kind == "restore"] == [1, 4]


def test_non_clobberable_registers_are_left_alone():
    steps = [
        MarshalStep(2, _render, (), frozenset({"b"})),
        MarshalStep(1, _render, (RegisterRead("b"),)),
    ]
    plan = _planner().plan(steps)
    assert plan.ops == []


def test_restore_moves_aside_when_home_holds_a_placed_argument():
    # x64: rdx is filled first, its old value then goes to rcx
    planner = RegisterPreservationPlanner({"c", "d", "r11", "xmm5"}, "r11", "xmm5")
    steps = [
        MarshalStep(2, _render, (RegisterRead("c"),), frozenset({"d"}), dest="d"),
        MarshalStep(1, _render, (RegisterRead("d"),), frozenset({"c"}), dest="c"),
        MarshalStep(0, _render),
    ]
    plan = planner.plan(steps)
    restore = [op for op in plan.ops if op.kind == "restore"]
    assert len(restore) == 1 and restore[0].register == "c"
    assert plan.renames[1] == {"d": "c"}
    assert plan.count("save", "c") == 0
