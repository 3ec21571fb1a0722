# streamlit run src/bikeshare/dashboard.py
import pandas as pd
import plotly.express as px
import streamlit as st

from src.bikeshare.config import BikeshareConfig
from src.bikeshare.run_log import recent_runs
from src.bikeshare.serving import PredictionService

st.set_page_config(page_title="Bike-Sharing Demand", layout="wide")
st.title("Bike-Sharing Demand Prediction")


@st.cache_resource
def get_service(data_dir: str, models_dir: str) -> PredictionService:
    return PredictionService(BikeshareConfig.from_env(data_dir=data_dir, models_dir=models_dir))


data_dir = st.sidebar.text_input("Data dir", "data")
models_dir = st.sidebar.text_input("Models dir", "models")
service = get_service(data_dir, models_dir)

all_predictions = service.peak_demand()
countries = sorted(all_predictions["country"].dropna().unique().tolist())
selected = st.sidebar.multiselect("Countries", countries, default=countries)
predictions = service.peak_demand(selected if selected and len(selected) < len(countries) else None)

tab_map, tab_models, tab_runs = st.tabs(["Predictive map", "Model comparison", "Pipeline runs"])

with tab_map:
    if (predictions["data_source"] == "sample").any():
        st.warning("Showing sample data: live forecasts could not be joined with reference cities.")
    if (predictions["prediction_source"] == "fallback").any():
        st.info("Some cities use the temperature fallback estimator instead of the trained model.")

    fig = px.scatter_geo(
        predictions,
        lat="latitude",
        lon="longitude",
        size="peak_demand",
        color="peak_demand",
        hover_name="entity",
        hover_data={"country": True, "prediction_source": True, "data_source": True},
        projection="natural earth",
        color_continuous_scale="Viridis",
    )
    st.plotly_chart(fig, use_container_width=True)
    st.dataframe(predictions, use_container_width=True)

    hourly = service.hourly_demand(selected or None)
    if not hourly.empty:
        hourly["timestamp"] = pd.to_datetime(hourly["timestamp"], errors="coerce")
        st.subheader("Forecast demand by hour")
        st.plotly_chart(
            px.line(hourly.sort_values("timestamp"), x="timestamp", y="demand", color="entity"),
            use_container_width=True,
        )

with tab_models:
    comparison = service.model_comparison()
    if comparison.empty:
        st.info("No model comparison yet. Run `bikeshare run` first.")
    else:
        st.dataframe(comparison, use_container_width=True)
        st.bar_chart(comparison.set_index("model")["rmse"], use_container_width=True)

with tab_runs:
    runs = pd.DataFrame(recent_runs(str(service.config.run_db_path()), limit=50))
    if runs.empty:
        st.info("No pipeline runs recorded.")
    else:
        st.dataframe(runs, use_container_width=True)
