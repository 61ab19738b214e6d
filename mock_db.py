# mock_db.py
DOCUMENTS = {
    "bio-week1.pdf": (
        "Chapter 1 Photosynthesis\n\n"
        "Photosynthesis converts light to energy. Chlorophyll in the chloroplast absorbs "
        "red and blue light and drives the light reactions.\n\n"
        "Chapter 2 Cellular respiration\n\n"
        "Mitochondria produce ATP through oxidative phosphorylation. Glycolysis happens in "
        "the cytoplasm and feeds pyruvate into the Krebs cycle.\n"
        "\f"
        "Chapter 3 Plant cells\n\n"
        "Cell walls provide structure. The wall is built from cellulose fibres and keeps "
        "plant cells from bursting when water flows in.\n"
    ),
    "phys-kinematics.pdf": (
        "Displacement, velocity and acceleration describe motion along a line. With constant "
        "acceleration, displacement is s = ut + (1/2)at^2 for any time t\n\n"
        "A projectile follows a parabolic trajectory. Its range depends on initial velocity and "
        "launch angle; air resistance reduces the range.\n"
    ),
}

# Canonical merge example: the shared passage must keep its vector score (0.77).
VECTOR_HITS = [
    ("Photosynthesis converts light to energy", 0.91),
    ("Mitochondria produce ATP", 0.77),
]
KEYWORD_HITS = [
    ("Mitochondria produce ATP", 0.60),
    ("Cell walls provide structure", 0.55),
]
