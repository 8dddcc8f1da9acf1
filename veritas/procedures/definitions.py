from __future__ import annotations

"""
Reference procedure definitions for the live assistant.

Each step carries its expected duration as a "<min>-<max> min" range string.
Keep this the only copy of the step lists; the engine and any batch tooling
resolve steps through the catalogue built from it.
"""

from typing import Any

_DIFFICULTY_STANDARD: dict[int, str] = {
    1: (
        "Low Difficulty: Primary, straightforward case with normal anatomy and no prior abdominal "
        "or pelvic surgeries. Minimal dissection required; no significant adhesions or anatomical distortion."
    ),
    2: (
        "Moderate Difficulty: Case involves mild to moderate adhesions or anatomical variation. May include "
        "BMI-related challenges, large hernias, or prior unrelated abdominal surgeries not directly affecting "
        "the operative field."
    ),
    3: (
        "High Difficulty: Redo or complex case with prior related surgeries (e.g., prior hernia repair, "
        "laparotomy). Significant adhesions, distorted anatomy, fibrosis, or other factors requiring advanced "
        "dissection and judgment."
    ),
}

_DIFFICULTY_LAP_APPY: dict[int, str] = {
    1: "Low: Primary, straightforward case with normal anatomy.",
    2: "Moderate: Mild adhesions or anatomical variation.",
    3: "High: Dense adhesions, distorted anatomy, prior surgery, or perforated/complicated appendicitis.",
}

_DIFFICULTY_OPEN_UMBILICAL: dict[int, str] = {
    1: (
        "Easy: Small fascial defect (<2 cm), minimal subcutaneous tissue, no prior abdominal surgeries, "
        "no incarceration, and straightforward reduction. Excellent exposure with minimal dissection required."
    ),
    2: (
        "Moderate: Medium-sized hernia (2-4 cm), presence of moderate subcutaneous fat, minor adhesions or "
        "partial incarceration, requiring careful dissection or tension at closure. May involve mild bleeding "
        "or minor wound concerns."
    ),
    3: (
        "Difficult: Large hernia defect (>4 cm), thickened or scarred sac from prior surgeries, dense adhesions, "
        "incarcerated or non-reducible contents, or challenging exposure due to obesity or previous mesh. May "
        "require layered closure or drains despite no formal mesh placement."
    ),
}

_DIFFICULTY_OPEN_VENTRAL_RETRORECTUS: dict[int, str] = {
    1: (
        "Easy: Defect <5 cm with minimal to no adhesions, good-quality fascia, and no prior mesh or wound "
        "infection. Retrorectus space is easily developed, mesh placement is tension-free, and closure is "
        "achieved without undue difficulty; may or may not need drains."
    ),
    2: (
        "Moderate: Defect 5-10 cm, moderate adhesions requiring careful lysis, prior abdominal surgeries "
        "without mesh, or modest scarring. Retrorectus dissection requires moderate effort; mesh placement and "
        "fascial closure are feasible but require precision. One or more drains may be placed."
    ),
    3: (
        "Difficult: Large or complex defect >10 cm, dense adhesions from multiple prior surgeries or mesh "
        "explantation, scarred or attenuated posterior sheath, and need for advanced exposure techniques "
        "(e.g., component separation). Retrorectus dissection is challenging, and closure may require "
        "reinforcement, advanced techniques, or staged approaches. Significant bleeding risk or compromised "
        "soft tissue envelope may be present."
    ),
}


PROCEDURE_DEFINITIONS: dict[str, dict[str, Any]] = {
    "laparoscopic-cholecystectomy": {
        "name": "Laparoscopic Cholecystectomy",
        "steps": [
            ("portPlacement", "Port Placement", "5-10 min"),
            ("calotTriangleDissection", "Dissection of Calot's Triangle", "10-25 min"),
            ("cysticArteryDuctClipping", "Clipping and division of Cystic Artery and Duct", "5-10 min"),
            ("gallbladderDissection", "Gallbladder Dissection of the Liver", "10-20 min"),
            ("specimenRemoval", "Specimen removal", "5-10 min"),
            ("portClosure", "Port Closure", "5-10 min"),
            ("skinClosure", "Skin Closure", "2-5 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
    "robotic-cholecystectomy": {
        "name": "Robotic Cholecystectomy",
        "steps": [
            ("portPlacement", "Port Placement", "5-10 min"),
            ("robotDocking", "Docking the robot", "5-15 min"),
            ("instrumentPlacement", "Instrument Placement", "2-5 min"),
            ("calotTriangleDissection", "Dissection of Calot's Triangle", "15-25 min"),
            ("cysticArteryDuctClipping", "Clipping and division of Cystic Artery and Duct", "5-10 min"),
            ("gallbladderDissection", "Gallbladder Dissection of the Liver", "10-20 min"),
            ("specimenRemoval", "Specimen removal", "5-10 min"),
            ("undocking", "Undocking and Tocar Removal", "5-10 min"),
            ("skinClosure", "Skin Closure", "5-10 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
    "laparoscopic-appendectomy": {
        "name": "Laparoscopic Appendicectomy",
        "steps": [
            ("portPlacement", "Port Placement", "5-10 min"),
            ("appendixDissection", "Identification, Dissection & Exposure of Appendix", "10-20 min"),
            ("mesoappendixDivision", "Division of Mesoappendix and Appendix Base", "5-10 min"),
            ("specimenExtraction", "Specimen Extraction", "2-5 min"),
            ("portClosure", "Port Closure", "5-10 min"),
            ("skinClosure", "Skin Closure", "2-5 min"),
        ],
        "difficulty": _DIFFICULTY_LAP_APPY,
    },
    "laparoscopic-inguinal-hernia-repair-tep": {
        "name": "Laparoscopic Inguinal Hernia Repair with Mesh (TEP)",
        "steps": [
            ("portPlacementPreperitoneal", "Port Placement and Creation of Preperitoneal Space", "15-30 min"),
            ("herniaDissection", "Hernia Sac Reduction and Dissection of Hernia Space", "15-30 min"),
            ("meshPlacement", "Mesh Placement", "10-15 min"),
            ("portClosure", "Port Closure", "5-10 min"),
            ("skinClosure", "Skin Closure", "2-5 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
    "robotic-inguinal-hernia-repair-tapp": {
        "name": "Robotic Assisted Laparoscopic Inguinal Hernia Repair (TAPP)",
        "steps": [
            ("portPlacement", "Port Placement", "5-10 min"),
            ("robotDocking", "Docking the robot", "5-15 min"),
            ("instrumentPlacement", "Instrument Placement", "2-5 min"),
            ("herniaReduction", "Reduction of Hernia", "10-20 min"),
            ("flapCreation", "Flap Creation", "20-40 min"),
            ("meshPlacement", "Mesh Placement and Fixation", "15-30 min"),
            ("flapClosure", "Flap Closure", "10-20 min"),
            ("undocking", "Undocking and Tocar Removal", "5-10 min"),
            ("skinClosure", "Skin Closure", "5-10 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
    "robotic-lap-ventral-hernia-repair": {
        "name": "Robotic Lap Ventral Hernia Repair (TAPP)",
        "steps": [
            ("portPlacement", "Port Placement", "5-10 min"),
            ("robotDocking", "Docking the robot", "5-15 min"),
            ("instrumentPlacement", "Instrument Placement", "2-5 min"),
            ("herniaReduction", "Reduction of Hernia", "10-20 min"),
            ("flapCreation", "Flap Creation", "20-40 min"),
            ("herniaClosure", "Hernia Closure", "10-20 min"),
            ("meshPlacement", "Mesh Placement and Fixation", "15-30 min"),
            ("flapClosure", "Flap Closure", "10-20 min"),
            ("undocking", "Undocking and Tocar Removal", "5-10 min"),
            ("skinClosure", "Skin Closure", "5-10 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
    "open-umbilical-hernia-repair-no-mesh": {
        "name": "Open Umbilical Hernia Repair Without Mesh",
        "steps": [
            ("skinIncision", "Skin Incision and Dissection to Hernia Sac", "5-10 min"),
            ("sacIsolation", "Hernia Sac Isolation & Opening", "5-10 min"),
            ("contentReduction", "Reduction of Hernia Contents", "5-10 min"),
            ("fasciaClosure", "Closure of Fascia", "10-15 min"),
            ("subcutaneousClosure", "Subcutaneous tissue Re-approximation", "2-5 min"),
            ("skinClosure", "Skin Closure", "2-5 min"),
        ],
        "difficulty": _DIFFICULTY_OPEN_UMBILICAL,
    },
    "open-vhr-retrorectus-mesh": {
        "name": "Open VHR with Retrorectus Mesh",
        "steps": [
            ("midlineIncision", "Midline Incision and Hernia Exposure", "10-15 min"),
            ("adhesiolysis", "Adhesiolysis and Hernia Sac Dissection", "20-30 min"),
            (
                "retrorectusCreation",
                "Posterior Rectus Sheath Incision & Retrorectus Space Creation",
                "20-30 min",
            ),
            (
                "posteriorClosure",
                "Posterior Rectus Sheath Closure & Hernia Content Reduction",
                "15-20 min",
            ),
            ("meshPlacement", "Mesh Placement in Retrorectus Plane", "20-30 min"),
            ("drainPlacement", "Closed Drain Placement", "5-10 min"),
            ("anteriorFascialClosure", "Anterior Fascial Closure", "20-25 min"),
            ("skinClosure", "Skin Closure", "10-15 min"),
        ],
        "difficulty": _DIFFICULTY_OPEN_VENTRAL_RETRORECTUS,
    },
    # Shortened timings for rehearsing the live loop end to end.
    "DEBUGGING-USE-ONLY-robotic-cholecystectomy": {
        "name": "DEBUGGING USE ONLY Robotic Cholecystectomy",
        "steps": [
            ("portPlacement", "Port Placement", "1-3 min"),
            ("robotDocking", "Docking the robot", "2-4 min"),
            ("instrumentPlacement", "Instrument Placement", "1-2 min"),
            ("calotTriangleDissection", "Dissection of Calot's Triangle", "1-5 min"),
            ("cysticArteryDuctClipping", "Clipping and division of Cystic Artery and Duct", "5-10 min"),
            ("gallbladderDissection", "Gallbladder Dissection of the Liver", "10-20 min"),
            ("specimenRemoval", "Specimen removal", "5-10 min"),
            ("undocking", "Undocking and Tocar Removal", "5-10 min"),
            ("skinClosure", "Skin Closure", "5-10 min"),
        ],
        "difficulty": _DIFFICULTY_STANDARD,
    },
}
