from fleetcore.sqn import DEFAULT_SEQ_NO, UNDEFINED_SEQ_NO, SeqNo


def test_str_joins_with_commas():
    assert str(SeqNo([1, 2, 3])) == "1,2,3"


def test_str_of_empty_is_empty():
    assert str(SeqNo()) == ""


def test_is_set():
    assert SeqNo([0]).is_set()
    assert SeqNo([5, -1]).is_set()
    assert not SeqNo().is_set()
    assert not SeqNo([-1, 5]).is_set()
    assert not DEFAULT_SEQ_NO.is_set()


def test_value():
    assert SeqNo([7, 8]).value() == 7
    assert SeqNo().value() == UNDEFINED_SEQ_NO
    assert DEFAULT_SEQ_NO.value() == UNDEFINED_SEQ_NO


def test_clone_is_independent():
    original = SeqNo([1, 2])
    copy = original.clone()
    assert copy == original
    copy.append(3)
    assert original == [1, 2]
    assert isinstance(copy, SeqNo)