import logging

import pytest

from castep_model.structure import Atom, LatticeVectors, Model

SAMPLE_MSI = """# MSI CERIUS2 DataModel File Version 4 0
(1 Model
  (A I CRY/DISPLAY (192 256))
  (A I PeriodicType 100)
  (A C SpaceGroup "1 1")
  (A D A3 (10 0 0))
  (A D B3 (0 10 0))
  (A D C3 (0 0 12.5))
  (A D CRY/TOLERANCE 0.05)
  (2 Atom
    (A C ACL "6 C")
    (A C Label "C1")
    (A D XYZ (0 0 0))
    (A I Id 1)
  )
  (3 Atom
    (A C ACL "8 O")
    (A D XYZ (1.25 -0.5 .75))
    (A I Id 2)
  )
  (4 Atom
    (A C ACL "1 H")
    (A C Label "H")
    (A D XYZ (-2. 1E0 -2.865153883599e-05))
    (A I Id 3)
  )
)
"""

# Model with a bond record and an unknown atom field; only kept by the
# "preserve" policy.
MSI_WITH_EXTRAS = """# MSI CERIUS2 DataModel File Version 4 0
(1 Model
  (A I PeriodicType 100)
  (A D A3 (5 0 0))
  (A D B3 (0 5 0))
  (A D C3 (0 0 5))
  (2 Atom
    (A C ACL "14 Si")
    (A D XYZ (0 0 0))
    (A I Id 1)
    (A D Charge 0.25)
  )
  (3 Atom
    (A C ACL "8 O")
    (A D XYZ (1.5 0 0))
    (A I Id 2)
  )
  (4 Bond
    (A O Atom1 2)
    (A O Atom2 3)
  )
)
"""


@pytest.fixture
def sample_msi_text():
    return SAMPLE_MSI


@pytest.fixture
def msi_with_extras_text():
    return MSI_WITH_EXTRAS


@pytest.fixture
def sample_model():
    return Model(
        atoms=[
            Atom(1, "C", (0.0, 0.0, 0.0), label="C1"),
            Atom(2, "O", (1.25, -0.5, 0.75)),
            Atom(3, "H", (-2.0, 1.0, 0.5)),
        ],
        lattice=LatticeVectors(((10.0, 0.0, 0.0), (0.0, 10.0, 0.0), (0.0, 0.0, 12.5))),
        settings={"PeriodicType": 100, "SpaceGroup": "1 1", "CRY/DISPLAY": (192, 256)},
    )


@pytest.fixture
def molecule_model():
    """Model without lattice vectors."""
    return Model(atoms=[Atom(1, "H", (0.0, 0.0, 0.0)), Atom(2, "H", (0.74, 0.0, 0.0))])


@pytest.fixture(autouse=True)
def restore_package_logger():
    logger = logging.getLogger("castep_model")
    level, handlers = logger.level, list(logger.handlers)
    yield
    logger.setLevel(level)
    logger.handlers = handlers
