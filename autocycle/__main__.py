from autocycle.main import run

run()
