import glob
import os

import pandas as pd
import plotly.graph_objects as go
from gromacs.fileformats import XVG

# Axis labels for the series written by the equilibration stages
SERIES_LABELS = {
    'potential': ('Potential energy', 'kJ/mol', 'Energy minimization step'),
    'temperature': ('Temperature', 'K', 'Time (ps)'),
    'pressure': ('Pressure', 'bar', 'Time (ps)'),
    'volume': ('Volume', 'nm^3', 'Time (ps)'),
}


def read_xvg(xvg_file, name=None):
    """
    Read a single-series xvg file written by gmx energy into a DataFrame.

    Parameters:
    - xvg_file (str): Path to the xvg file.
    - name (str): Column name for the series (default is the file stem).

    Returns:
    - pd.DataFrame: Columns 'time' and name.
    """
    if name is None:
        name = os.path.splitext(os.path.basename(xvg_file))[0]
    data = XVG(filename=xvg_file).array
    if data.ndim != 2 or data.shape[0] < 2 or data.shape[1] == 0:
        raise ValueError(f"No data series found in {xvg_file}")
    return pd.DataFrame({'time': data[0], name: data[1]})


def plot_xvg(xvg_file, out_file=None, title=None):
    """Render an xvg series as an interactive plotly HTML file."""
    name = os.path.splitext(os.path.basename(xvg_file))[0]
    df = read_xvg(xvg_file, name)
    label, unit, xlabel = SERIES_LABELS.get(name, (name.capitalize(), '', 'Time (ps)'))
    if out_file is None:
        out_file = os.path.splitext(xvg_file)[0] + '.html'

    fig = go.Figure()
    fig.add_trace(go.Scatter(x=df['time'], y=df[name], mode='lines', name=label))
    # running average overlay
    if len(df) > 10 and name != 'potential':
        window = max(len(df) // 10, 2)
        fig.add_trace(go.Scatter(x=df['time'], y=df[name].rolling(window, min_periods=1).mean(),
                                 mode='lines', name=f'{label} (running average)'))
    fig.update_layout(
        title=title or label,
        xaxis_title=xlabel,
        yaxis_title=f'{label} ({unit})' if unit else label,
        template='plotly_white',
    )
    fig.write_html(out_file, include_plotlyjs='cdn')
    return out_file


def plot_replica_graphs(graph_dir, title_prefix=None):
    """
    Plot every xvg file in graph_dir and write equilibration.csv with the
    mean, standard deviation and final value of each series.

    Returns the list of written HTML files.
    """
    html_files = []
    rows = []
    for xvg_file in sorted(glob.glob(os.path.join(graph_dir, '*.xvg'))):
        name = os.path.splitext(os.path.basename(xvg_file))[0]
        title = f'{title_prefix}: {name}' if title_prefix else None
        html_files.append(plot_xvg(xvg_file, title=title))
        series = read_xvg(xvg_file, name)[name]
        rows.append({'series': name, 'mean': series.mean(), 'std': series.std(),
                     'final': series.iloc[-1], 'points': len(series)})
    if rows:
        pd.DataFrame(rows).to_csv(os.path.join(graph_dir, 'equilibration.csv'), index=False)
    return html_files
