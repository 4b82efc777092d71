import luksdev

if __name__ == '__main__':
	luksdev.run_as_a_module()
