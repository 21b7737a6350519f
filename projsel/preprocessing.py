"""
Data Preprocessing Module - Phase 2
====================================

Handles column derivation, predictor rescaling, and model formula assembly.

Functions:
    - RegressionPreprocessor: Derive columns and standardize predictors
    - build_formula: Assemble a model formula string
    - parse_formula: Split a formula into response and terms
    - design_matrices: Build response vector and design matrix with patsy
"""

import logging
from pathlib import Path
from typing import Dict, Any, Tuple, Optional, List

import pandas as pd
import patsy
from sklearn.preprocessing import StandardScaler
import joblib

logger = logging.getLogger(__name__)


class RegressionPreprocessor:
    """
    Preprocessing pipeline for a single-response regression dataset.

    Derived columns are computed first, then predictors are standardized
    so that coefficient priors and shrinkage act on a common scale.
    """

    def __init__(
        self,
        response: str,
        predictors: List[str],
        derive: Optional[Dict[str, str]] = None,
        standardize: bool = True,
        center_response: bool = False
    ):
        """
        Initialize the preprocessor.

        Args:
            response: Name of the response column
            predictors: Names of predictor columns (may include derived ones)
            derive: Mapping of new column name to a pandas expression
            standardize: Whether to scale predictors to zero mean, unit variance
            center_response: Whether to subtract the response mean
        """
        if not response:
            raise ValueError("A response column name is required")
        if response in predictors:
            raise ValueError(f"Response '{response}' cannot also be a predictor")

        self.response = response
        self.predictors = list(predictors)
        self.derive = dict(derive or {})
        self.standardize = standardize
        self.center_response = center_response

        self.scaler: Optional[StandardScaler] = None
        self.response_mean_: float = 0.0
        self._is_fitted = False

    def derive_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Add derived columns defined as pandas expressions.

        Args:
            df: Raw data

        Returns:
            Copy of the data with derived columns appended
        """
        df = df.copy()
        for name, expression in self.derive.items():
            df[name] = df.eval(expression)
            logger.info(f"Derived column '{name}' = {expression}")
        return df

    def _check_columns(self, df: pd.DataFrame) -> None:
        missing = [col for col in [self.response] + self.predictors if col not in df.columns]
        if missing:
            raise ValueError(f"Columns not found after derivation: {missing}")

    def fit(self, df: pd.DataFrame) -> 'RegressionPreprocessor':
        """
        Fit the preprocessor to the data (learn scaling parameters).

        Args:
            df: Raw data

        Returns:
            Self for method chaining
        """
        df = self.derive_columns(df)
        self._check_columns(df)

        if self.standardize and self.predictors:
            self.scaler = StandardScaler()
            self.scaler.fit(df[self.predictors].values)
            logger.info(f"Fitted StandardScaler to {len(self.predictors)} predictors")

        if self.center_response:
            self.response_mean_ = float(df[self.response].mean())

        self._is_fitted = True
        return self

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Transform data using fitted parameters.

        Args:
            df: Raw data

        Returns:
            DataFrame with the response followed by the (scaled) predictors
        """
        if not self._is_fitted:
            raise ValueError("Preprocessor must be fitted before transform. Call fit() first.")

        df = self.derive_columns(df)
        self._check_columns(df)

        out = pd.DataFrame(index=df.index)
        out[self.response] = df[self.response].astype(float) - self.response_mean_

        if self.predictors:
            values = df[self.predictors].values.astype(float)
            if self.scaler is not None:
                values = self.scaler.transform(values)
            out = out.join(pd.DataFrame(values, columns=self.predictors, index=df.index))

        return out

    def fit_transform(self, df: pd.DataFrame) -> pd.DataFrame:
        """Fit and transform in one step."""
        self.fit(df)
        return self.transform(df)

    def coefficients_to_original_scale(self, draws: pd.DataFrame) -> pd.DataFrame:
        """
        Map coefficient draws from the model scale back to the data scale.

        Columns that are not predictors (e.g. sigma) are passed through.
        A subset of predictors is allowed, as for projected submodels.

        Args:
            draws: DataFrame with an 'Intercept' column and predictor columns

        Returns:
            DataFrame of the same shape on the original scale
        """
        if not self._is_fitted:
            raise ValueError("Preprocessor must be fitted before inverse scaling.")

        out = draws.copy()
        terms = [col for col in draws.columns if col in self.predictors]

        if self.scaler is not None and terms:
            idx = [self.predictors.index(col) for col in terms]
            means = self.scaler.mean_[idx]
            scales = self.scaler.scale_[idx]
            out[terms] = draws[terms].values / scales
            if 'Intercept' in out.columns:
                shift = (draws[terms].values * (means / scales)).sum(axis=1)
                out['Intercept'] = draws['Intercept'].values - shift

        if 'Intercept' in out.columns:
            out['Intercept'] = out['Intercept'] + self.response_mean_

        return out

    def save(self, filepath: str) -> None:
        """Save the preprocessor state to disk."""
        state = {
            'response': self.response,
            'predictors': self.predictors,
            'derive': self.derive,
            'standardize': self.standardize,
            'center_response': self.center_response,
            'scaler': self.scaler,
            'response_mean_': self.response_mean_,
            '_is_fitted': self._is_fitted
        }
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Preprocessor saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'RegressionPreprocessor':
        """Load a preprocessor from disk."""
        state = joblib.load(filepath)

        preprocessor = cls(
            response=state['response'],
            predictors=state['predictors'],
            derive=state['derive'],
            standardize=state['standardize'],
            center_response=state['center_response']
        )
        preprocessor.scaler = state['scaler']
        preprocessor.response_mean_ = state['response_mean_']
        preprocessor._is_fitted = state['_is_fitted']

        logger.info(f"Preprocessor loaded from {filepath}")
        return preprocessor


def build_formula(response: str, predictors: List[str]) -> str:
    """
    Assemble a model formula string.

    Args:
        response: Response column name
        predictors: Predictor column names

    Returns:
        Formula such as "siri ~ age + weight + height"
    """
    if not response:
        raise ValueError("A response column name is required")
    rhs = " + ".join(predictors) if predictors else "1"
    return f"{response} ~ {rhs}"


def parse_formula(formula: str) -> Tuple[str, List[str]]:
    """
    Split a formula into its response and its non-intercept terms.

    Args:
        formula: Formula string, e.g. "y ~ x1 + x2"

    Returns:
        Tuple of (response name, list of term names)
    """
    desc = patsy.ModelDesc.from_formula(formula)
    if len(desc.lhs_termlist) != 1:
        raise ValueError(f"Formula must have exactly one response: {formula!r}")

    response = desc.lhs_termlist[0].name()
    terms = [term.name() for term in desc.rhs_termlist if term.factors]
    return response, terms


def design_matrices(formula: str, df: pd.DataFrame) -> Tuple[pd.Series, pd.DataFrame]:
    """
    Build the response vector and design matrix for a formula.

    The intercept column is dropped because the regression model carries
    its own intercept parameter.

    Args:
        formula: Model formula
        df: Data containing all formula variables

    Returns:
        Tuple of (y, X)
    """
    y, X = patsy.dmatrices(formula, df, return_type="dataframe", NA_action="raise")
    if 'Intercept' in X.columns:
        X = X.drop(columns='Intercept')
    return y.iloc[:, 0], X


def analysis_frame(df: pd.DataFrame, config: Dict[str, Any]) -> pd.DataFrame:
    """
    Response and configured predictors, derived columns included.

    Other columns of the file (identifiers, alternative responses) are
    dropped. Without a configured response the data is returned as is.

    Args:
        df: Raw DataFrame
        config: Configuration dictionary

    Returns:
        DataFrame with the response first, then the predictors
    """
    data_config = config.get('data', {})
    response = data_config.get('response')
    if response is None:
        return df

    predictors = data_config.get('predictors')
    if predictors is None:
        predictors = [col for col in df.columns if col != response]

    preprocessor = RegressionPreprocessor(
        response=response,
        predictors=predictors,
        derive=data_config.get('derive')
    )
    data = preprocessor.derive_columns(df)
    preprocessor._check_columns(data)
    return data[[response] + list(predictors)]


def preprocess_pipeline(df: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Complete preprocessing pipeline: derive, rescale, and build the design.

    Args:
        df: Raw DataFrame
        config: Configuration dictionary

    Returns:
        Dictionary containing:
            - data: Transformed DataFrame
            - preprocessor: Fitted RegressionPreprocessor
            - formula: Model formula string
            - y, X: Response vector and design matrix
            - term_names: Names of design-matrix columns
    """
    data_config = config.get('data', {})
    prep_config = config.get('preprocessing', {})

    response = data_config.get('response')
    predictors = data_config.get('predictors')
    if predictors is None:
        predictors = [col for col in df.columns if col != response]

    logger.info("=" * 60)
    logger.info("STARTING DATA PREPROCESSING (Phase 2)")
    logger.info("=" * 60)

    preprocessor = RegressionPreprocessor(
        response=response,
        predictors=predictors,
        derive=data_config.get('derive'),
        standardize=prep_config.get('standardize', True),
        center_response=prep_config.get('center_response', False)
    )

    data = preprocessor.fit_transform(df)
    formula = data_config.get('formula') or build_formula(response, predictors)
    y, X = design_matrices(formula, data)

    save_path = prep_config.get('save_path')
    if save_path:
        preprocessor.save(save_path)

    result = {
        'data': data,
        'preprocessor': preprocessor,
        'formula': formula,
        'y': y,
        'X': X,
        'term_names': list(X.columns)
    }

    logger.info("=" * 60)
    logger.info("PREPROCESSING COMPLETE")
    logger.info(f"  Formula: {formula}")
    logger.info(f"  Observations: {len(y)}")
    logger.info(f"  Terms: {X.shape[1]}")
    logger.info("=" * 60)

    return result


def print_preprocessing_summary(result: Dict[str, Any]) -> None:
    """
    Print a summary of the preprocessing results.

    Args:
        result: Dictionary from preprocess_pipeline
    """
    preprocessor = result['preprocessor']
    print("\n" + "=" * 50)
    print("PREPROCESSING SUMMARY")
    print("=" * 50)
    print(f"Formula: {result['formula']}")
    print(f"Observations: {len(result['y'])}")
    print(f"Terms: {len(result['term_names'])}")
    print(f"Standardized predictors: {preprocessor.standardize}")
    if preprocessor.derive:
        print("Derived columns:")
        for name, expression in preprocessor.derive.items():
            print(f"  - {name} = {expression}")
    print("=" * 50 + "\n")
