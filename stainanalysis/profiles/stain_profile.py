"""
Stain profile persistence.

A stain profile is a named record of up to three stain vectors plus the
analysis model and separation algorithm that produced them, stored as a
small XML document:

    <stain-profile profile-name="...">
      <components numstains="2">
        <stain index="1" stain-name="Hematoxylin">
          <stain-value value-type="r">0.65</stain-value>
          <stain-value value-type="g">0.70</stain-value>
          <stain-value value-type="b">0.29</stain-value>
        </stain>
        ...
      </components>
      <analysis-model model-name="Ruifrok+Johnston Deconvolution">
        <parameter param-type="threshold">1.0</parameter>
      </analysis-model>
      <algorithm alg-name="Macenko 2-Stain Decomposition">
        <parameter param-type="percentile">1.0</parameter>
      </algorithm>
    </stain-profile>

The estimators only consume the flattened 3x3 matrix returned by
:meth:`StainProfile.get_profiles_as_array`.
"""

import logging
import os
import warnings
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

__all__ = ["StainProfile", "ANALYSIS_MODEL_OPTIONS", "SEPARATION_ALGORITHM_OPTIONS"]

MAX_STAINS = 3

ANALYSIS_MODEL_OPTIONS = ("Ruifrok+Johnston Deconvolution",)

SEPARATION_ALGORITHM_OPTIONS = (
    "Ruifrok+Johnston Deconvolution",
    "Macenko 2-Stain Decomposition",
    "Niethammer 2-Stain Decomposition",
    "Non-Negative Matrix Factorization",
    "Independent Component Analysis",
    "Singular Value Decomposition",
    "Region-of-Interest Selection",
)

# XML tag and attribute names
ROOT_TAG = "stain-profile"
PROFILE_NAME_ATTR = "profile-name"
COMPONENTS_TAG = "components"
NUM_STAINS_ATTR = "numstains"
STAIN_TAG = "stain"
STAIN_INDEX_ATTR = "index"
STAIN_NAME_ATTR = "stain-name"
STAIN_VALUE_TAG = "stain-value"
VALUE_TYPE_ATTR = "value-type"
ANALYSIS_MODEL_TAG = "analysis-model"
MODEL_NAME_ATTR = "model-name"
ALGORITHM_TAG = "algorithm"
ALGORITHM_NAME_ATTR = "alg-name"
PARAMETER_TAG = "parameter"
PARAMETER_TYPE_ATTR = "param-type"

_VALUE_TYPES = ("r", "g", "b")


def _unit(values: np.ndarray) -> np.ndarray:
    length = float(np.linalg.norm(values))
    return values / length if length > 0.0 else values.copy()


class StainProfile:
    """
    XML-backed stain profile.

    The document is built with an empty skeleton on construction, so every
    getter works on a fresh profile: names are ``""``, the stain count is 0
    and all stain values are zero.

    Args:
        name: Optional profile name.

    Example:
        >>> profile = StainProfile("H&E")
        >>> profile.set_number_of_stains(2)
        True
        >>> profile.set_stain_rgb(1, (0.65, 0.70, 0.29))
        True
        >>> profile.write_stain_profile("he.xml")
        True
    """

    def __init__(self, name: str = ""):
        self._root = self._build_document()
        if name:
            self.set_name(name)

    def copy(self) -> "StainProfile":
        """Deep copy of this profile."""
        other = StainProfile()
        other._root = ET.fromstring(ET.tostring(self._root))
        return other

    def __repr__(self) -> str:
        return f"StainProfile(name={self.get_name()!r}, stains={self.get_number_of_stains()})"

    # ------------------------------------------------------------------
    # Document structure
    # ------------------------------------------------------------------

    @staticmethod
    def _build_document() -> ET.Element:
        root = ET.Element(ROOT_TAG, {PROFILE_NAME_ATTR: ""})
        components = ET.SubElement(root, COMPONENTS_TAG, {NUM_STAINS_ATTR: "0"})
        for index in range(1, MAX_STAINS + 1):
            stain = ET.SubElement(
                components, STAIN_TAG, {STAIN_INDEX_ATTR: str(index), STAIN_NAME_ATTR: ""}
            )
            for value_type in _VALUE_TYPES:
                value = ET.SubElement(stain, STAIN_VALUE_TAG, {VALUE_TYPE_ATTR: value_type})
                value.text = "0"
        ET.SubElement(root, ANALYSIS_MODEL_TAG, {MODEL_NAME_ATTR: ""})
        ET.SubElement(root, ALGORITHM_TAG, {ALGORITHM_NAME_ATTR: ""})
        return root

    def _components(self) -> Optional[ET.Element]:
        return self._root.find(COMPONENTS_TAG)

    def _stain_element(self, index: int) -> Optional[ET.Element]:
        components = self._components()
        if components is None:
            return None
        for stain in components.findall(STAIN_TAG):
            if stain.get(STAIN_INDEX_ATTR) == str(index):
                return stain
        return None

    def _section(self, tag: str) -> Optional[ET.Element]:
        return self._root.find(tag)

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def set_name(self, name: str) -> bool:
        self._root.set(PROFILE_NAME_ATTR, name)
        return True

    def get_name(self) -> str:
        return self._root.get(PROFILE_NAME_ATTR, "")

    def set_number_of_stains(self, count: int) -> bool:
        """
        Set the number of stain components.

        Negative counts are rejected and stored as -1. Counts above three
        are stored but only the first three stains are ever read.
        """
        components = self._components()
        if components is None:
            return False
        if count < 0:
            components.set(NUM_STAINS_ATTR, "-1")
            return False
        if count > MAX_STAINS:
            warnings.warn(
                f"Stain profiles hold at most {MAX_STAINS} stains; values beyond that are ignored",
                stacklevel=2,
            )
        components.set(NUM_STAINS_ATTR, str(int(count)))
        return True

    def get_number_of_stains(self) -> int:
        """Number of stain components, or -1 when missing or unparsable."""
        components = self._components()
        if components is None:
            return -1
        try:
            return int(components.get(NUM_STAINS_ATTR, ""))
        except ValueError:
            return -1

    def set_stain_name(self, index: int, name: str) -> bool:
        stain = self._stain_element(index)
        if stain is None:
            return False
        stain.set(STAIN_NAME_ATTR, name)
        return True

    def get_stain_name(self, index: int) -> str:
        stain = self._stain_element(index)
        if stain is None:
            return ""
        return stain.get(STAIN_NAME_ATTR, "")

    def get_stain_names(self) -> List[str]:
        return [self.get_stain_name(i) for i in range(1, MAX_STAINS + 1)]

    # ------------------------------------------------------------------
    # Analysis model and algorithm
    # ------------------------------------------------------------------

    @staticmethod
    def get_analysis_model_options() -> List[str]:
        return list(ANALYSIS_MODEL_OPTIONS)

    @staticmethod
    def get_separation_algorithm_options() -> List[str]:
        return list(SEPARATION_ALGORITHM_OPTIONS)

    @staticmethod
    def get_separation_algorithm_name(index: int) -> str:
        """Option name at *index*, or ``""`` when out of range."""
        if 0 <= index < len(SEPARATION_ALGORITHM_OPTIONS):
            return SEPARATION_ALGORITHM_OPTIONS[index]
        return ""

    def set_analysis_model(self, name: str) -> bool:
        if name not in ANALYSIS_MODEL_OPTIONS:
            logger.warning("Unknown analysis model: %s", name)
            return False
        section = self._section(ANALYSIS_MODEL_TAG)
        if section is None:
            section = ET.SubElement(self._root, ANALYSIS_MODEL_TAG)
        section.set(MODEL_NAME_ATTR, name)
        return True

    def get_analysis_model(self) -> str:
        section = self._section(ANALYSIS_MODEL_TAG)
        return "" if section is None else section.get(MODEL_NAME_ATTR, "")

    def set_separation_algorithm(self, name: str) -> bool:
        if name not in SEPARATION_ALGORITHM_OPTIONS:
            logger.warning("Unknown stain separation algorithm: %s", name)
            return False
        section = self._section(ALGORITHM_TAG)
        if section is None:
            section = ET.SubElement(self._root, ALGORITHM_TAG)
        section.set(ALGORITHM_NAME_ATTR, name)
        return True

    def get_separation_algorithm(self) -> str:
        section = self._section(ALGORITHM_TAG)
        return "" if section is None else section.get(ALGORITHM_NAME_ATTR, "")

    def _set_parameter(self, tag: str, key: str, value) -> bool:
        section = self._section(tag)
        if section is None:
            return False
        for param in section.findall(PARAMETER_TAG):
            if param.get(PARAMETER_TYPE_ATTR) == key:
                param.text = str(value)
                return True
        param = ET.SubElement(section, PARAMETER_TAG, {PARAMETER_TYPE_ATTR: key})
        param.text = str(value)
        return True

    def _get_parameters(self, tag: str) -> Dict[str, str]:
        section = self._section(tag)
        if section is None:
            return {}
        return {
            param.get(PARAMETER_TYPE_ATTR, ""): (param.text or "")
            for param in section.findall(PARAMETER_TAG)
        }

    def set_algorithm_parameter(self, key: str, value) -> bool:
        return self._set_parameter(ALGORITHM_TAG, key, value)

    def get_algorithm_parameters(self) -> Dict[str, str]:
        return self._get_parameters(ALGORITHM_TAG)

    def set_analysis_model_parameter(self, key: str, value) -> bool:
        return self._set_parameter(ANALYSIS_MODEL_TAG, key, value)

    def get_analysis_model_parameters(self) -> Dict[str, str]:
        return self._get_parameters(ANALYSIS_MODEL_TAG)

    # ------------------------------------------------------------------
    # Stain vectors
    # ------------------------------------------------------------------

    def set_stain_rgb(self, index: int, rgb: Sequence[float]) -> bool:
        """
        Store stain *index* (1-based), normalized to unit length.

        Args:
            index: Stain slot, 1 to 3.
            rgb: Three OD components.

        Returns:
            False if the slot does not exist or *rgb* does not hold three values.
        """
        values = np.asarray(rgb, dtype=np.float64).ravel()
        if values.size != 3:
            return False
        stain = self._stain_element(index)
        if stain is None:
            return False
        unit = _unit(values)
        for element in stain.findall(STAIN_VALUE_TAG):
            value_type = element.get(VALUE_TYPE_ATTR)
            if value_type in _VALUE_TYPES:
                element.text = repr(float(unit[_VALUE_TYPES.index(value_type)]))
        return True

    def get_stain_rgb(self, index: int) -> np.ndarray:
        """Stain *index* as a length-3 array; zeros if missing or unparsable."""
        out = np.zeros(3, dtype=np.float64)
        stain = self._stain_element(index)
        if stain is None:
            return out
        values = np.zeros(3, dtype=np.float64)
        for element in stain.findall(STAIN_VALUE_TAG):
            value_type = element.get(VALUE_TYPE_ATTR)
            if value_type not in _VALUE_TYPES:
                continue
            try:
                values[_VALUE_TYPES.index(value_type)] = float(element.text or "")
            except ValueError:
                return out
        return values

    def get_profiles_as_array(self, normalize: bool = False) -> Optional[np.ndarray]:
        """
        Stain vectors as a (3, 3) matrix, one stain per row.

        Rows past the number of stains are zero.

        Args:
            normalize: Normalize each stored row to unit length.

        Returns:
            The matrix, or None when the profile has no stains.
        """
        count = self.get_number_of_stains()
        if count <= 0:
            return None
        matrix = np.zeros((3, 3), dtype=np.float64)
        for row in range(min(count, MAX_STAINS)):
            rgb = self.get_stain_rgb(row + 1)
            matrix[row] = _unit(rgb) if normalize else rgb
        return matrix

    def set_profiles_from_array(self, matrix) -> bool:
        """Store all three rows of a 3x3 matrix (9 values, row-major)."""
        values = np.asarray(matrix, dtype=np.float64).ravel()
        if values.size != 9:
            return False
        rows = values.reshape(3, 3)
        return all(self.set_stain_rgb(i + 1, rows[i]) for i in range(MAX_STAINS))

    def clear_stain_values(self) -> bool:
        """Zero all stain values and names, and set the count to 0."""
        components = self._components()
        if components is None:
            return False
        components.set(NUM_STAINS_ATTR, "0")
        for index in range(1, MAX_STAINS + 1):
            stain = self._stain_element(index)
            if stain is None:
                continue
            stain.set(STAIN_NAME_ATTR, "")
            for element in stain.findall(STAIN_VALUE_TAG):
                element.text = "0"
        return True

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check_profile(self) -> bool:
        """True when the document has the full structure and at least one stain."""
        if self._components() is None or self._section(ALGORITHM_TAG) is None:
            return False
        if any(self._stain_element(i) is None for i in range(1, MAX_STAINS + 1)):
            return False
        return (
            self.get_profiles_as_array(normalize=False) is not None
            and self.get_profiles_as_array(normalize=True) is not None
        )

    def clear_profile(self) -> bool:
        """Reset the document to the empty skeleton."""
        self._root = self._build_document()
        return True

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_string(self) -> str:
        tree = ET.ElementTree(self._root)
        ET.indent(tree)
        return ET.tostring(self._root, encoding="unicode")

    def write_stain_profile(self, path: Union[str, Path]) -> bool:
        """Write the profile to *path*; False if the file cannot be written."""
        try:
            tree = ET.ElementTree(self._root)
            ET.indent(tree)
            tree.write(str(path), encoding="utf-8", xml_declaration=True)
        except OSError as e:
            logger.warning("Could not write stain profile %s: %s", path, e)
            return False
        return True

    def read_stain_profile(self, path: Union[str, Path]) -> bool:
        """
        Replace this profile with the one stored at *path*.

        The current document is kept when the file is missing, is not XML,
        or lacks the required elements.
        """
        if not os.path.isfile(path):
            logger.warning("Stain profile not found: %s", path)
            return False
        try:
            root = ET.parse(str(path)).getroot()
        except (ET.ParseError, OSError) as e:
            logger.warning("Could not parse stain profile %s: %s", path, e)
            return False
        return self._adopt(root)

    def read_stain_profile_from_string(self, text: str) -> bool:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            logger.warning("Could not parse stain profile text: %s", e)
            return False
        return self._adopt(root)

    def _adopt(self, root: ET.Element) -> bool:
        if root.tag != ROOT_TAG:
            logger.warning("Unexpected root element <%s>", root.tag)
            return False
        components = root.find(COMPONENTS_TAG)
        if components is None or root.find(ALGORITHM_TAG) is None:
            logger.warning("Stain profile lacks <%s> or <%s>", COMPONENTS_TAG, ALGORITHM_TAG)
            return False
        for stain in components.findall(STAIN_TAG):
            try:
                int(stain.get(STAIN_INDEX_ATTR, ""))
            except ValueError:
                logger.warning("Stain element without a valid index")
                return False

        # Fill in stain slots the file leaves out
        present = {stain.get(STAIN_INDEX_ATTR) for stain in components.findall(STAIN_TAG)}
        for index in range(1, MAX_STAINS + 1):
            if str(index) in present:
                continue
            stain = ET.SubElement(
                components, STAIN_TAG, {STAIN_INDEX_ATTR: str(index), STAIN_NAME_ATTR: ""}
            )
            for value_type in _VALUE_TYPES:
                ET.SubElement(stain, STAIN_VALUE_TAG, {VALUE_TYPE_ATTR: value_type}).text = "0"
        if root.find(ANALYSIS_MODEL_TAG) is None:
            ET.SubElement(root, ANALYSIS_MODEL_TAG, {MODEL_NAME_ATTR: ""})

        self._root = root
        return True
