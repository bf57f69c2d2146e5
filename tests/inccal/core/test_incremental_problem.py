########################################################################################
##
##                                  TESTS FOR
##               'core/optimization_problem.py' and 'core/incremental_problem.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from inccal.core.design_variable import DesignVariable
from inccal.core.error_term import FunctionErrorTerm
from inccal.core.optimization_problem import OptimizationProblem
from inccal.core.incremental_problem import IncrementalOptimizationProblem
from inccal.exceptions import InvalidOperationError


# HELPERS ==============================================================================

def _batch(*dvs):
    """Batch holding *dvs* and one prior per variable."""
    b = OptimizationProblem()
    for dv in dvs:
        b.add_design_variable(dv)
    for dv in dvs:
        b.add_error_term(FunctionErrorTerm(lambda x: x - 1.0, [dv]))
    return b


# TESTS ================================================================================

class TestOptimizationProblem:

    def test_add_design_variable_and_group(self):
        dv = DesignVariable([0.0])
        b = OptimizationProblem().add_design_variable(dv, group_id=3)
        assert dv.group_id == 3
        assert b.is_design_variable_in(dv)
        assert b.num_design_variables == 1

    def test_duplicate_design_variable(self):
        dv = DesignVariable([0.0], name="x")
        b = OptimizationProblem().add_design_variable(dv)
        with pytest.raises(ValueError, match="already in the batch"):
            b.add_design_variable(dv)

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            OptimizationProblem().add_design_variable(np.zeros(2))

    def test_error_term_foreign_variable(self):
        inside = DesignVariable([0.0], name="in")
        outside = DesignVariable([0.0], name="out")
        b = OptimizationProblem().add_design_variable(inside)
        with pytest.raises(ValueError, match="'out'"):
            b.add_error_term(FunctionErrorTerm(lambda x: x, [outside]))

    def test_group_ids_first_appearance(self):
        b = OptimizationProblem()
        b.add_design_variable(DesignVariable([0.0]), group_id=2)
        b.add_design_variable(DesignVariable([0.0]), group_id=0)
        b.add_design_variable(DesignVariable([0.0]), group_id=2)
        assert b.group_ids == [2, 0]

    def test_evaluate(self):
        dv = DesignVariable([3.0])
        assert _batch(dv).evaluate() == pytest.approx(4.0)


class TestIncrementalOptimizationProblem:

    def test_shared_variable_reference_counted(self):
        theta = DesignVariable([0.0, 0.0], group_id=1)
        b1 = _batch(DesignVariable([0.0]), theta)
        b2 = _batch(DesignVariable([0.0]), theta)

        p = IncrementalOptimizationProblem()
        p.add(b1)
        p.add(b2)
        assert p.num_batches == 2
        assert p.num_design_variables() == 3
        assert p.num_error_terms() == 4

        p.remove(b1)
        assert p.is_design_variable_in(theta)
        p.remove(0)
        assert not p.is_design_variable_in(theta)
        assert p.num_design_variables() == 0
        assert p.groups_ordering == []

    def test_groups_appended_and_dropped(self):
        p = IncrementalOptimizationProblem()
        b1 = _batch(DesignVariable([0.0], group_id=1), DesignVariable([0.0], group_id=0))
        b2 = _batch(DesignVariable([0.0], group_id=2))
        p.add(b1)
        p.add(b2)
        assert p.groups_ordering == [1, 0, 2]
        p.remove(b1)
        assert p.groups_ordering == [2]

    def test_enumeration_follows_ordering(self):
        local = DesignVariable([0.0], name="local", group_id=0)
        theta = DesignVariable([0.0], name="theta", group_id=1)
        p = IncrementalOptimizationProblem()
        p.add(_batch(theta, local))
        assert [dv.name for dv in p.design_variables] == ["theta", "local"]
        p.set_groups_ordering([0, 1])
        assert [dv.name for dv in p.design_variables] == ["local", "theta"]
        assert p.design_variable(1) is theta

    def test_set_groups_ordering_not_permutation(self):
        p = IncrementalOptimizationProblem()
        p.add(_batch(DesignVariable([0.0], group_id=0)))
        with pytest.raises(ValueError, match="permutation"):
            p.set_groups_ordering([0, 1])

    def test_add_twice(self):
        p = IncrementalOptimizationProblem()
        b = _batch(DesignVariable([0.0]))
        p.add(b)
        with pytest.raises(InvalidOperationError):
            p.add(b)

    def test_add_wrong_type(self):
        with pytest.raises(TypeError):
            IncrementalOptimizationProblem().add("batch")

    def test_remove_errors(self):
        p = IncrementalOptimizationProblem()
        p.add(_batch(DesignVariable([0.0])))
        with pytest.raises(IndexError):
            p.remove(4)
        with pytest.raises(ValueError):
            p.remove(_batch(DesignVariable([0.0])))

    def test_index_of(self):
        p = IncrementalOptimizationProblem()
        b1 = _batch(DesignVariable([0.0]))
        b2 = _batch(DesignVariable([0.0]))
        p.add(b1)
        p.add(b2)
        assert p.index_of(b2) == 1
        assert p.index_of(_batch(DesignVariable([0.0]))) is None
        assert p.get_batch(0) is b1
        assert list(p) == [b1, b2]

    def test_group_dim_active_only(self):
        p = IncrementalOptimizationProblem()
        p.add(_batch(
            DesignVariable(np.zeros(3), group_id=1),
            DesignVariable(np.zeros(2), group_id=1, active=False),
        ))
        assert p.get_group_dim(1) == 3
        assert len(p.get_group_design_variables(1)) == 2
        with pytest.raises(KeyError):
            p.get_group_dim(7)

    def test_save_restore(self):
        x = DesignVariable([1.0])
        y = DesignVariable([2.0])
        p = IncrementalOptimizationProblem()
        p.add(_batch(x, y))

        p.save_design_variables()
        assert p.has_saved_design_variables
        x.update([5.0])
        y.update([-5.0])
        p.restore_design_variables()
        np.testing.assert_array_equal(x.value, [1.0])
        np.testing.assert_array_equal(y.value, [2.0])

    def test_evaluate_aggregate(self):
        p = IncrementalOptimizationProblem()
        p.add(_batch(DesignVariable([3.0])))
        p.add(_batch(DesignVariable([2.0])))
        assert p.evaluate() == pytest.approx(5.0)
