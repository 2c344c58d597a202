import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist


def poisson_lognormal(counts, term, donor, n_donors, n_markers=None):
    """Poisson log-normal mixed model with condition-specific cell covariance.

    Generative process (D markers, two condition levels):
      beta[d, l]       ~ Normal(0, 5)
      sigma, sigma_term, sigma_donor ~ HalfCauchy(2.5)       per marker
      L, L_term, L_donor              ~ LKJCholesky(D, 2)
      b_donor[g]  = diag(sigma_donor) L_donor z_g             z_g ~ N(0, I)
      u_n         = diag(sigma_l) L_l z_n                     l = term of cell n
      y[n, d]     ~ Poisson(exp(beta[d, l] + u_n[d] + b_donor[donor_n, d]))

    Level 0 uses (sigma, L), level 1 uses (sigma_term, L_term).
    """
    if n_markers is None:
        n_markers = counts.shape[-1]
    n_cells = term.shape[0]

    beta = numpyro.sample("beta", dist.Normal(0.0, 5.0).expand([n_markers, 2]).to_event(2))
    sigma = numpyro.sample("sigma", dist.HalfCauchy(2.5).expand([n_markers]).to_event(1))
    sigma_term = numpyro.sample("sigma_term", dist.HalfCauchy(2.5).expand([n_markers]).to_event(1))
    sigma_donor = numpyro.sample("sigma_donor", dist.HalfCauchy(2.5).expand([n_markers]).to_event(1))

    L = numpyro.sample("L", dist.LKJCholesky(n_markers, concentration=2.0))
    L_term = numpyro.sample("L_term", dist.LKJCholesky(n_markers, concentration=2.0))
    L_donor = numpyro.sample("L_donor", dist.LKJCholesky(n_markers, concentration=2.0))

    numpyro.deterministic("Cor", L @ L.T)
    numpyro.deterministic("Cor_term", L_term @ L_term.T)
    numpyro.deterministic("Cor_donor", L_donor @ L_donor.T)

    scale_tril = sigma[:, None] * L
    scale_tril_term = sigma_term[:, None] * L_term
    scale_tril_donor = sigma_donor[:, None] * L_donor

    with numpyro.plate("donors", n_donors):
        z_donor = numpyro.sample("z_donor", dist.Normal(0.0, 1.0).expand([n_markers]).to_event(1))
    b_donor = numpyro.deterministic("b_donor", z_donor @ scale_tril_donor.T)

    with numpyro.plate("cells", n_cells):
        z = numpyro.sample("z", dist.Normal(0.0, 1.0).expand([n_markers]).to_event(1))
        u = jnp.where(term[:, None] == 1, z @ scale_tril_term.T, z @ scale_tril.T)
        log_rate = beta.T[term] + u + b_donor[donor]
        numpyro.sample("y", dist.Poisson(jnp.exp(log_rate)).to_event(1), obs=counts)
